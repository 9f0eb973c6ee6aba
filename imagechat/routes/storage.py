from flask import Blueprint, abort, send_from_directory
import os

from imagechat.services import storage
from imagechat.services.image_utils import SUFFIX_TO_MIME

storage_bp = Blueprint("storage", __name__)

@storage_bp.get(f"/storage/{storage.BUCKET}/<path:subpath>")
def serve_blob(subpath: str):
    # simple path normalisation to avoid '..'
    norm = os.path.normpath(subpath)
    if norm.startswith("..") or os.path.isabs(norm) or not storage.exists(norm):
        abort(404)
    mimetype = SUFFIX_TO_MIME.get(os.path.splitext(norm)[1].lower(), "application/octet-stream")
    resp = send_from_directory(os.path.abspath(storage.bucket_dir()), norm, mimetype=mimetype)
    resp.headers["Cache-Control"] = "public, max-age=3600"
    return resp
