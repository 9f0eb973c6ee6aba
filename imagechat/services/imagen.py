from typing import Callable, Optional, Tuple, TypeVar
import time

import requests

from imagechat import config
from imagechat.log import log
from imagechat.services.errors import UpstreamError

VALID_ASPECT_RATIOS = ("1:1", "3:4", "4:3", "9:16", "16:9")
DEFAULT_ASPECT_RATIO = "1:1"

T = TypeVar("T")

def validate_aspect_ratio(ratio) -> str:
    if isinstance(ratio, str) and ratio in VALID_ASPECT_RATIOS:
        return ratio
    if ratio is not None:
        log(f"[imagen] [WARN] invalid aspect ratio {ratio!r}, using {DEFAULT_ASPECT_RATIO}")
    return DEFAULT_ASPECT_RATIO

def with_retry(fn: Callable[[], T], attempts: int = 2, initial_delay: float = 1.0,
               sleep: Optional[Callable[[float], None]] = None) -> T:
    """Call fn up to `attempts` times, doubling the delay between tries; re-raise the last error."""
    backoff = initial_delay
    last_err: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_err = e
            log(f"[imagen] RETRY {attempt}/{attempts} error: {e}")
            if attempt < attempts:
                (sleep or time.sleep)(backoff)
                backoff *= 2
    raise last_err

def _predict_url(model_name: str) -> str:
    return f"{config.IMAGEN_API_BASE}/models/{model_name}:predict"

def _post_predict(url: str, api_key: str, payload: dict, timeout: float) -> dict:
    try:
        resp = requests.post(
            url,
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json=payload,
            timeout=timeout,
        )
    except requests.exceptions.RequestException as e:
        raise UpstreamError(f"Imagen request failed: {e}")

    try:
        data = resp.json()
    except ValueError:
        snippet = (resp.text or "")[:200]
        raise UpstreamError(f"Imagen API returned non-JSON response ({resp.status_code}): {snippet}",
                            status=resp.status_code, non_json=True)

    if not resp.ok:
        err = data.get("error") if isinstance(data, dict) else None
        msg = err.get("message") if isinstance(err, dict) else None
        raise UpstreamError(f"Imagen API error {resp.status_code}: {msg or resp.reason}",
                            status=resp.status_code)
    return data

def generate_with_imagen(
    prompt: str,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
    *,
    model_name: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout: float = 60.0,
    attempts: int = 2,
    initial_delay: float = 1.0,
) -> Tuple[str, str]:
    """
    Text-to-image call against the :predict endpoint.
    Returns (base64 image, mime type); raises UpstreamError on non-2xx,
    unparsable bodies and empty predictions.
    """
    model_name = model_name or config.IMAGEN_MODEL
    api_key = api_key or config.GEMINI_API_KEY
    ratio = validate_aspect_ratio(aspect_ratio)
    payload = {
        "instances": [{"prompt": prompt}],
        "parameters": {"number_of_images": 1, "sampleCount": 1, "aspectRatio": ratio},
    }
    url = _predict_url(model_name)

    call_t0 = time.perf_counter()
    log(f"[imagen] CALL → model={model_name}, aspectRatio={ratio}")
    data = with_retry(lambda: _post_predict(url, api_key, payload, timeout),
                      attempts=attempts, initial_delay=initial_delay)
    log(f"[imagen] RECV ← {time.perf_counter() - call_t0:.2f}s")

    predictions = data.get("predictions") if isinstance(data, dict) else None
    if not predictions:
        raise UpstreamError("Imagen API returned no predictions")
    first = predictions[0] or {}
    b64 = first.get("bytesBase64Encoded")
    if not b64:
        raise UpstreamError("Imagen API returned a prediction without image bytes")
    return b64, first.get("mimeType") or "image/png"
