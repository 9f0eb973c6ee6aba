from flask import Blueprint, request, jsonify

from imagechat.models import history_from_json, history_to_json
from imagechat.services import history as store
from imagechat.services.image_utils import ImageInputError

conv_bp = Blueprint("conversations", __name__)

# The hosted auth provider sits in front of this service and forwards the
# signed-in user's id in this header.
USER_HEADER = "X-User-Id"

def _user_id():
    uid = (request.headers.get(USER_HEADER) or "").strip()
    return uid or None

def _unauthenticated():
    return jsonify({"error": f"{USER_HEADER} header required"}), 401

@conv_bp.get("/api/conversations")
def list_conversations():
    uid = _user_id()
    if not uid:
        return _unauthenticated()
    return jsonify(store.get_conversations(uid))

@conv_bp.post("/api/conversations")
def save_conversation():
    """
    Save the whole history of a conversation (create when no id is given).
      JSON: {history: [...], title?, conversationId?}
    -> { id }
    """
    uid = _user_id()
    if not uid:
        return _unauthenticated()
    data = request.get_json(silent=True) or {}
    try:
        history = history_from_json(data.get("history"))
    except ValueError as e:
        return jsonify({"error": f"invalid history: {e}"}), 400
    if not history:
        return jsonify({"error": "history required"}), 400

    cid = data.get("conversationId")
    if cid is not None and cid != "":
        try:
            cid = int(cid)
        except (TypeError, ValueError):
            return jsonify({"error": "conversationId must be an integer"}), 400
        if not store.get_conversation(cid, uid):
            return jsonify({"error": "conversation not found"}), 404
    else:
        cid = None

    try:
        resolved = store.resolve_history_images(history)
    except ImageInputError as e:
        return jsonify({"error": str(e)}), 400

    saved = store.convert_and_save_history(history, data.get("title") or None, cid, uid, resolved=resolved)
    if saved is None:
        return jsonify({"error": "Failed to save conversation"}), 500
    return jsonify({"id": saved})

@conv_bp.get("/api/conversations/<int:cid>")
def get_conversation(cid: int):
    uid = _user_id()
    if not uid:
        return _unauthenticated()
    conv = store.get_conversation(cid, uid)
    if not conv:
        return jsonify({"error": "not found"}), 404
    history = store.load_conversation_as_history(cid, uid)
    return jsonify({"id": conv["id"], "title": conv["title"], "history": history_to_json(history)})

@conv_bp.delete("/api/conversations/<int:cid>")
def delete_conversation(cid: int):
    uid = _user_id()
    if not uid:
        return _unauthenticated()
    if not store.get_conversation(cid, uid):
        return jsonify({"error": "not found"}), 404
    if not store.delete_conversation(cid, uid):
        return jsonify({"error": "Failed to delete conversation"}), 500
    return jsonify({"ok": True})

@conv_bp.get("/api/health/storage")
def storage_health():
    result = store.check_storage_connection()
    return jsonify(result), (200 if result["success"] else 503)
