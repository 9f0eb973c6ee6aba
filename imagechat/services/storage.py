import os, time, uuid
from typing import Iterable, List, Optional
from urllib.parse import unquote

from imagechat import config
from imagechat.log import log
from imagechat.services.image_utils import MIME_TO_SUFFIX

BUCKET = "images"
URL_PREFIX = f"/storage/{BUCKET}/"

def bucket_dir() -> str:
    return os.path.join(config.STORAGE_DIR, BUCKET)

def ensure_bucket() -> str:
    d = bucket_dir()
    os.makedirs(d, exist_ok=True)
    return d

def _abs(path: str) -> str:
    root = os.path.abspath(bucket_dir())
    abs_path = os.path.abspath(os.path.join(root, path))
    if os.path.commonpath([root, abs_path]) != root:
        raise ValueError(f"path escapes bucket: {path}")
    return abs_path

def new_path(mime: str = "image/png") -> str:
    """<epoch ms>-<uuid4><suffix>; the suffix lets the blob route pick a mimetype."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4()}{MIME_TO_SUFFIX.get(mime, '.png')}"

def upload(path: str, data: bytes) -> str:
    abs_path = _abs(path)
    os.makedirs(os.path.dirname(abs_path), exist_ok=True)
    with open(abs_path, "wb") as f:
        f.write(data)
    log(f"[storage] UPLOAD {path} ({len(data) / 1024.0:.1f} KB)")
    return path

def read(path: str) -> bytes:
    with open(_abs(path), "rb") as f:
        return f.read()

def exists(path: str) -> bool:
    try:
        return os.path.isfile(_abs(path))
    except ValueError:
        return False

def remove(paths: Iterable[str]) -> int:
    """Delete blobs; missing ones are skipped. Returns how many files were removed."""
    removed = 0
    for p in paths:
        if not p:
            continue
        try:
            os.remove(_abs(p))
            removed += 1
        except FileNotFoundError:
            continue
        except (OSError, ValueError) as e:
            log(f"[storage] [WARN] could not remove {p}: {e}")
    return removed

def list_paths() -> List[str]:
    d = bucket_dir()
    if not os.path.isdir(d):
        return []
    return sorted(n for n in os.listdir(d) if os.path.isfile(os.path.join(d, n)))

def public_url(path: str) -> str:
    return f"{config.PUBLIC_BASE_URL}{URL_PREFIX}{path}"

def path_from_public_url(url: str) -> Optional[str]:
    """Inverse of public_url(); None for URLs that do not point into this bucket."""
    prefix = f"{config.PUBLIC_BASE_URL}{URL_PREFIX}"
    if not url or not url.startswith(prefix):
        return None
    path = unquote(url[len(prefix):].split("?", 1)[0])
    return path or None
