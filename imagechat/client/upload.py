from pathlib import Path
from typing import Union
import mimetypes

from imagechat.log import log
from imagechat.services.image_utils import (
    ImageInputError, data_url_size, format_file_size, optimize_image, sniff_mime, to_data_url,
)

ACCEPTED_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

def load_upload(source: Union[str, Path, bytes], filename_hint: str = "",
                max_width: int = 1024, quality: int = 80) -> str:
    """
    Read a user-picked image (path or raw bytes) into a data URL, shrunk to
    max_width before it enters the UI state.
    """
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        path = Path(source)
        filename_hint = filename_hint or path.name
        data = path.read_bytes()

    mime = None
    if filename_hint:
        mime, _ = mimetypes.guess_type(filename_hint)
    mime = mime or sniff_mime(data, default="")
    if mime not in ACCEPTED_TYPES:
        raise ImageInputError(f"Unsupported image type: {mime or 'unknown'}")

    original = to_data_url(data, mime)
    optimized = optimize_image(original, max_width=max_width, quality=quality)
    log(f"[client] Image loaded {filename_hint or 'upload'}: {format_file_size(len(data))} -> "
        f"{format_file_size(data_url_size(optimized))}")
    return optimized
