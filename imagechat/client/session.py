from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional
import threading, time

from imagechat.client.api import ApiError
from imagechat.client.state import AppState, elapsed_seconds, reduce
from imagechat.log import log
from imagechat.models import HistoryItem, history_to_json

SLOW_AFTER_SECONDS = 30.0
PRELOAD_CONVERSATIONS = 3


class ChatSession:
    """
    I/O shell around the reducer: talks to the server, runs the slow-request
    timer and persists finished turns on a background worker.
    `api` is an HttpApi or anything with the same methods.
    """

    def __init__(self, api, *, clock: Callable[[], float] = time.time,
                 slow_after: float = SLOW_AFTER_SECONDS,
                 on_change: Optional[Callable[[AppState], None]] = None):
        self.api = api
        self.clock = clock
        self.slow_after = slow_after
        self.on_change = on_change
        self.state = AppState()
        self._lock = threading.Lock()
        self._saver = ThreadPoolExecutor(max_workers=1)
        self._pending: List[Future] = []

    def dispatch(self, action: Dict[str, Any]) -> AppState:
        with self._lock:
            self.state = reduce(self.state, action)
            state = self.state
        if self.on_change:
            self.on_change(state)
        return state

    # ---------- image helpers ----------
    def _prepare_image(self, image: Optional[str]) -> Optional[str]:
        """Data URLs pass through; public URLs are fetched and re-encoded."""
        if not image or image.startswith("data:"):
            return image
        if image.startswith(("http://", "https://")):
            log(f"[client] Converting image URL to base64 for editing: {image[:60]}")
            data_url = self.api.fetch_image(image)
            self.dispatch({"type": "image_resolved", "original": image, "data_url": data_url})
            return data_url
        return image

    def select_image(self, data_url: Optional[str]) -> AppState:
        return self.dispatch({"type": "select_image", "image": data_url})

    # ---------- submit ----------
    def submit(self, prompt: str, *, model: Optional[str] = None,
               aspect_ratio: Optional[str] = None) -> Optional[Future]:
        """
        Send one turn. Returns the Future of the background save, or None when
        nothing was generated.
        """
        current = self.state
        state = self.dispatch({"type": "submit_started", "prompt": prompt, "now": self.clock()})
        # runs next to the server's own timeout, it only warns
        timer = threading.Timer(self.slow_after, lambda: self.dispatch({"type": "slow_warning"}))
        timer.daemon = True
        timer.start()

        try:
            image = self._prepare_image(current.current_image)
            payload: Dict[str, Any] = {
                "prompt": prompt,
                "image": image,
                "history": history_to_json(state.history),
                "isEditing": current.is_editing,
            }
            if model:
                payload["model"] = model
            if aspect_ratio:
                payload["aspectRatio"] = aspect_ratio
            data = self.api.generate(payload)
        except ApiError as e:
            log(f"[client] [ERROR] Error processing request: {e}")
            self.dispatch({"type": "submit_failed", "error": str(e)})
            return None
        finally:
            timer.cancel()

        state = self.dispatch({"type": "submit_succeeded",
                               "image": data.get("image"), "description": data.get("description")})
        if not data.get("image"):
            return None
        return self._save_async(list(state.history), state.current_conversation_id)

    def cancel(self) -> AppState:
        # the request itself keeps running, only the UI stops waiting
        return self.dispatch({"type": "cancel"})

    # ---------- persistence ----------
    def _save(self, history: List[HistoryItem], conversation_id) -> Any:
        try:
            cid = self.api.save_history(history, conversation_id)
            conversations = self.api.list_conversations()
        except ApiError as e:
            log(f"[client] [WARN] Failed to save conversation: {e}")
            self.dispatch({"type": "save_failed"})
            return None
        self.dispatch({"type": "saved", "conversation_id": cid,
                       "conversations": conversations, "history": history})
        return cid

    def _save_async(self, history: List[HistoryItem], conversation_id) -> Future:
        fut = self._saver.submit(self._save, history, conversation_id)
        self._pending.append(fut)
        return fut

    def wait_for_saves(self, timeout: Optional[float] = None) -> None:
        pending, self._pending = self._pending, []
        for fut in pending:
            fut.result(timeout=timeout)

    def close(self) -> None:
        self._saver.shutdown(wait=True)

    # ---------- conversations ----------
    def load_conversations(self) -> AppState:
        self.dispatch({"type": "history_loading", "loading": True})
        try:
            conversations = self.api.list_conversations()
            histories = {}
            for conv in conversations[:PRELOAD_CONVERSATIONS]:
                histories[conv["id"]] = self.api.load_history(conv["id"])
        except ApiError as e:
            log(f"[client] [ERROR] Failed to load conversations: {e}")
            return self.dispatch({"type": "error", "error": "Failed to load your conversation history"})
        return self.dispatch({"type": "conversations_loaded",
                              "conversations": conversations, "histories": histories})

    def select_conversation(self, index: int) -> AppState:
        state = self.state
        if index < 0 or index >= len(state.conversations):
            return self.dispatch({"type": "error", "error": "Failed to load conversation"})
        if index == state.current_index:
            return state
        cid = state.conversations[index]["id"]
        history = state.cached_histories.get(cid)
        if not history:
            self.dispatch({"type": "history_loading", "loading": True})
            try:
                history = self.api.load_history(cid)
            except ApiError as e:
                log(f"[client] [ERROR] Error selecting conversation: {e}")
                return self.dispatch({"type": "error", "error": "Failed to load conversation"})
        return self.dispatch({"type": "conversation_selected", "index": index,
                              "conversation_id": cid, "history": history})

    def delete_conversation(self, index: int) -> AppState:
        state = self.state
        if index < 0 or index >= len(state.conversations):
            return self.dispatch({"type": "error", "error": "Failed to delete conversation"})
        self.dispatch({"type": "history_loading", "loading": True})
        try:
            ok = self.api.delete_conversation(state.conversations[index]["id"])
        except ApiError as e:
            log(f"[client] [ERROR] Error deleting conversation: {e}")
            ok = False
        if not ok:
            return self.dispatch({"type": "error", "error": "Failed to delete conversation"})
        return self.dispatch({"type": "conversation_deleted", "index": index})

    def clear_history(self) -> AppState:
        self.dispatch({"type": "reset"})
        return self.load_conversations()

    def reset(self) -> AppState:
        return self.dispatch({"type": "reset"})

    def new_conversation_with_current_image(self) -> AppState:
        return self.dispatch({"type": "new_conversation_with_image"})

    def toggle_sidebar(self) -> AppState:
        return self.dispatch({"type": "toggle_sidebar"})

    def elapsed(self) -> int:
        return elapsed_seconds(self.state, self.clock())
