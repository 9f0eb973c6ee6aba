from typing import Any, Dict, List, Optional

import requests

from imagechat import config
from imagechat.models import HistoryItem, history_from_json, history_to_json
from imagechat.services.image_utils import sniff_mime, to_data_url


class ApiError(Exception):
    """A call to the imagechat server failed; str() is what the UI shows."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.body = body or {}


class HttpApi:
    """Thin requests-based client for the imagechat HTTP surface."""

    def __init__(self, user_id: str, base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = 120.0):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers["X-User-Id"] = user_id
        self.timeout = timeout

    def _call(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ApiError(str(e))
        try:
            data = resp.json()
        except ValueError:
            raise ApiError("Failed to parse response from server", status=resp.status_code)
        if not resp.ok:
            body = data if isinstance(data, dict) else {}
            msg = body.get("details") or body.get("error") or f"Server error: {resp.status_code}"
            raise ApiError(msg, status=resp.status_code, body=body)
        return data

    def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._call("POST", "/api/image", json=payload)
        if not data:
            raise ApiError("Empty response from server")
        return data

    def list_conversations(self) -> List[Dict[str, Any]]:
        return self._call("GET", "/api/conversations")

    def load_history(self, conversation_id) -> List[HistoryItem]:
        data = self._call("GET", f"/api/conversations/{conversation_id}")
        return history_from_json(data.get("history"))

    def save_history(self, history: List[HistoryItem], conversation_id=None, title: Optional[str] = None):
        body: Dict[str, Any] = {"history": history_to_json(history)}
        if conversation_id is not None:
            body["conversationId"] = conversation_id
        if title:
            body["title"] = title
        return self._call("POST", "/api/conversations", json=body)["id"]

    def delete_conversation(self, conversation_id) -> bool:
        return bool(self._call("DELETE", f"/api/conversations/{conversation_id}").get("ok"))

    def fetch_image(self, url: str) -> str:
        """Download a public image URL and re-encode it as a data URL."""
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Failed to load the image: {e}")
        mime = (resp.headers.get("Content-Type") or "").split(";")[0].strip()
        if not mime.startswith("image/"):
            mime = sniff_mime(resp.content)
        return to_data_url(resp.content, mime)
