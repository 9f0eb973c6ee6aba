from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional, Tuple
import base64, threading, time

# pip install google-genai pillow python-dotenv
from google import genai
from google.genai import types

from imagechat import config
from imagechat.log import log
from imagechat.services.errors import UpstreamError
from imagechat.services.image_utils import ImageInputError, optimize_image_bytes

# ---------- client ----------
# the SDK client is stateless per request, one instance per key is reused
_clients = {}
_clients_lock = threading.Lock()

def get_client(api_key: Optional[str] = None) -> genai.Client:
    key = api_key or config.GEMINI_API_KEY
    with _clients_lock:
        client = _clients.get(key)
        if client is None:
            client = genai.Client(api_key=key)
            _clients[key] = client
    return client

def _generation_config() -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        temperature=1,
        top_p=0.95,
        top_k=40,
        response_modalities=["TEXT", "IMAGE"],
    )

def _as_b64(data) -> str:
    # the SDK hands back raw bytes; older builds returned base64 text
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(data).decode("ascii")
    return str(data)

def _extract_parts(resp) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Scan the first candidate for at most one inline image and one text part.
    Returns (base64 image, mime type, text).
    """
    candidates = getattr(resp, "candidates", None) or []
    if not candidates:
        raise UpstreamError("No valid response from Gemini API", no_candidates=True)
    parts = getattr(getattr(candidates[0], "content", None), "parts", None) or []
    log(f"[gemini] Number of parts in response: {len(parts)}")

    image_b64 = mime = text = None
    for part in parts:
        inline = getattr(part, "inline_data", None)
        if inline is not None and getattr(inline, "data", None) and image_b64 is None:
            image_b64 = _as_b64(inline.data)
            mime = getattr(inline, "mime_type", None) or "image/png"
            log(f"[gemini] Image data received, length: {len(image_b64)} MIME type: {mime}")
        elif getattr(part, "text", None) and text is None:
            text = part.text
            log(f"[gemini] Text response received: {text[:50]}...")
    return image_b64, mime, text

# ---------- main ----------
def generate_with_gemini(
    prompt: str,
    image: Optional[Tuple[str, bytes]] = None,   # (mime, raw bytes) of the image being edited
    *,
    model_name: Optional[str] = None,
    timeout: Optional[float] = None,
    api_key: Optional[str] = None,
    client: Optional[genai.Client] = None,
) -> Tuple[str, str, Optional[str]]:
    """
    Edit-capable generation. Sends one text part (the prompt) plus, when
    editing, one inline image part that is first shrunk to <=1024px wide.
    The call races a timeout; on expiry UpstreamError("API request timed out").
    Returns (base64 image, mime type, description or None).
    """
    _client = client or get_client(api_key)
    model_name = model_name or config.GEMINI_MODEL
    timeout = config.EDIT_TIMEOUT_SECONDS if timeout is None else timeout

    # Order: prompt, then the image being edited
    contents = [prompt]
    if image is not None:
        mime, raw = image
        try:
            small, small_mime = optimize_image_bytes(raw, mime)
        except (OSError, ValueError) as e:
            raise ImageInputError(f"Failed to load image: {e}") from e
        log(f"[gemini] Image data prepared for editing: {len(raw) / 1024.0:.1f} KB -> "
            f"{len(small) / 1024.0:.1f} KB ({small_mime})")
        contents.append(types.Part.from_bytes(data=small, mime_type=small_mime))
    else:
        log(f"[gemini] No image provided, text-only prompt for generation: {prompt[:50]}")
    log(f"[gemini] CALL → model={model_name}, parts={len(contents)}, timeout={timeout:.0f}s")

    call_t0 = time.perf_counter()
    ex = ThreadPoolExecutor(max_workers=1)
    try:
        fut = ex.submit(
            _client.models.generate_content,
            model=model_name,
            contents=contents,
            config=_generation_config(),
        )
        try:
            resp = fut.result(timeout=timeout)
        except FutureTimeout:
            raise UpstreamError("API request timed out")
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(str(e) or e.__class__.__name__) from e
    finally:
        # do not wait for an abandoned call
        ex.shutdown(wait=False, cancel_futures=True)
    log(f"[gemini] RECV ← {time.perf_counter() - call_t0:.2f}s")

    image_b64, mime, text = _extract_parts(resp)
    if not image_b64:
        raise UpstreamError("No image generated in response", no_image=True)
    return image_b64, mime, text
