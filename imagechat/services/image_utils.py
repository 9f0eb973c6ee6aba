import base64, binascii, math, re
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image

# ---------- helpers ----------
_FORMAT_TO_MIME = {
    "PNG":  "image/png",
    "JPEG": "image/jpeg",
    "JPG":  "image/jpeg",
    "WEBP": "image/webp",
    "GIF":  "image/gif",
    "BMP":  "image/bmp",
}
MIME_TO_SUFFIX = {
    "image/png":  ".png",
    "image/jpeg": ".jpg",
    "image/jpg":  ".jpg",
    "image/webp": ".webp",
    "image/gif":  ".gif",
    "image/bmp":  ".bmp",
}
SUFFIX_TO_MIME = {
    ".png":  "image/png",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif":  "image/gif",
    ".bmp":  "image/bmp",
}

_DATA_URL_MIME = re.compile(r"data:([^;]+);base64,")


class ImageInputError(ValueError):
    """Raised for image payloads that are not usable base64 data URLs."""


def is_data_url(value) -> bool:
    return isinstance(value, str) and "data:" in value and ";base64," in value

def data_url_mime(data_url: str, default: str = "image/jpeg") -> str:
    m = _DATA_URL_MIME.search(data_url)
    return m.group(1) if m else default

def parse_data_url(data_url, default_mime: str = "image/jpeg") -> Tuple[str, bytes]:
    """
    Split a data URL into (mime, raw bytes).
    Raises ImageInputError when the value is not a string, lacks the
    data:/;base64, markers, or carries undecodable base64.
    """
    if not isinstance(data_url, str):
        raise ImageInputError("Invalid image input")
    if not is_data_url(data_url):
        raise ImageInputError("Invalid image data URL format")
    idx = data_url.find(";base64,")
    payload = data_url[idx + len(";base64,"):]
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageInputError(f"Invalid base64 image data: {e}")
    return data_url_mime(data_url, default_mime), raw

def to_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

def sniff_mime(data: bytes, default: str = "image/png") -> str:
    try:
        with Image.open(BytesIO(data)) as im:
            fmt = (im.format or "").upper()
    except Exception:
        return default
    return _FORMAT_TO_MIME.get(fmt, default)

def image_mime(data: bytes) -> str:
    """MIME of bytes Pillow can decode as one of the known formats; ImageInputError otherwise."""
    if not data:
        raise ImageInputError("Image data is empty")
    try:
        with Image.open(BytesIO(data)) as im:
            fmt = (im.format or "").upper()
            im.verify()
    except Exception as e:
        raise ImageInputError(f"Not a valid image: {e}")
    if fmt not in _FORMAT_TO_MIME:
        raise ImageInputError(f"Unsupported image format: {fmt or 'unknown'}")
    return _FORMAT_TO_MIME[fmt]

def optimize_image_bytes(data: bytes, mime: str, max_width: int = 1024, quality: int = 80) -> Tuple[bytes, str]:
    """Resize to at most max_width (aspect kept) and recompress. PNG stays PNG, everything else becomes JPEG."""
    out_mime = "image/png" if mime == "image/png" else "image/jpeg"
    with Image.open(BytesIO(data)) as im:
        im.load()
        width, height = im.size
        if width > max_width:
            ratio = max_width / width
            im = im.resize((max_width, max(1, round(height * ratio))), Image.Resampling.LANCZOS)
        buf = BytesIO()
        if out_mime == "image/png":
            im.save(buf, format="PNG", optimize=True)
        else:
            if im.mode not in ("RGB", "L"):
                im = im.convert("RGB")
            im.save(buf, format="JPEG", quality=quality)
    return buf.getvalue(), out_mime

def optimize_image(data_url: str, max_width: int = 1024, quality: int = 80) -> str:
    mime, raw = parse_data_url(data_url)
    try:
        out, out_mime = optimize_image_bytes(raw, mime, max_width=max_width, quality=quality)
    except (OSError, ValueError) as e:
        raise ImageInputError(f"Failed to load image: {e}")
    return to_data_url(out, out_mime)

def data_url_size(data_url: Optional[str]) -> int:
    """Approximate decoded size: base64 uses 4 characters per 3 bytes."""
    if not data_url or "," not in data_url:
        return 0
    payload = data_url.split(",", 1)[1]
    return math.floor(len(payload) * 3 / 4)

def format_file_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"
