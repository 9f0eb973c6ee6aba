import base64
from io import BytesIO
from types import SimpleNamespace

import pytest
from PIL import Image

from imagechat import config
from imagechat.db import init_db
from imagechat.services import imagen, model
from imagechat.services.storage import ensure_bucket


def image_bytes(fmt="PNG", size=(8, 6), color=(200, 30, 30)):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()

def data_url(fmt="PNG", size=(8, 6), color=(200, 30, 30)):
    mime = "image/png" if fmt == "PNG" else "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(image_bytes(fmt, size, color)).decode()}"


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "storage" / "app.db"))
    monkeypatch.setattr(config, "PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setattr(config, "GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(config, "APP_ENV", "development")
    ensure_bucket()
    init_db()
    return tmp_path


@pytest.fixture
def app(env):
    from imagechat.app import create_app
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


class FakeGemini:
    """Stands in for genai.Client; records every generate_content call."""

    def __init__(self, parts=None, candidates=True, exc=None):
        self.calls = []
        self.exc = exc
        if parts is None:
            parts = [
                SimpleNamespace(inline_data=None, text="Here is your image"),
                SimpleNamespace(inline_data=SimpleNamespace(data=image_bytes(), mime_type="image/png"), text=None),
            ]
        content = SimpleNamespace(parts=parts)
        self.response = SimpleNamespace(candidates=[SimpleNamespace(content=content)] if candidates else [])
        self.models = SimpleNamespace(generate_content=self._generate_content)

    def _generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest.fixture
def fake_gemini(monkeypatch):
    fake = FakeGemini()
    monkeypatch.setattr(model, "get_client", lambda api_key=None: fake)
    return fake


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ""
        self.reason = "Error" if status_code >= 400 else "OK"

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


@pytest.fixture
def imagen_http(monkeypatch):
    """Queue of responses for requests.post as seen by the Imagen backend."""
    calls = []
    queue = []

    def fake_post(url, params=None, headers=None, json=None, timeout=None):
        calls.append({"url": url, "params": params, "json": json})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(imagen.requests, "post", fake_post)
    monkeypatch.setattr(imagen.time, "sleep", lambda s: None)
    return SimpleNamespace(calls=calls, queue=queue)


def imagen_ok(b64=None):
    b64 = b64 or base64.b64encode(image_bytes()).decode()
    return FakeResponse(200, {"predictions": [{"bytesBase64Encoded": b64, "mimeType": "image/png"}]})
