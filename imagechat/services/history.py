"""
Conversation persistence.

Maps the in-memory history (a list of HistoryItem) onto the conversations /
messages / images tables plus blobs in the `images` bucket. Saving is a full
delete-and-reinsert of every message and image of the conversation; two
concurrent saves of the same conversation race and the last one wins.
"""
import base64, binascii, os, sqlite3
from typing import Any, Dict, List, Optional, Tuple

from imagechat import db as _db
from imagechat.log import log
from imagechat.models import HistoryItem, HistoryPart
from imagechat.services import storage
from imagechat.services.image_utils import ImageInputError, image_mime, parse_data_url

DEFAULT_TITLE = "New Conversation"
TITLE_LENGTH = 30

def _row(r) -> Optional[Dict[str, Any]]:
    return dict(r) if r is not None else None

def derive_title(history: List[HistoryItem]) -> str:
    for item in history:
        if item.role != "user":
            continue
        for part in item.parts:
            if part.text:
                return part.text[:TITLE_LENGTH]
        break
    return DEFAULT_TITLE

# ---------- conversations ----------
def get_conversations(user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT id, user_id, title, created_at, updated_at FROM conversations"
    args: Tuple = ()
    if user_id:
        sql += " WHERE user_id=?"
        args = (user_id,)
    sql += " ORDER BY updated_at DESC, id DESC"
    try:
        with _db.db() as conn:
            rows = conn.execute(sql, args).fetchall()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] fetching conversations: {e}")
        return []
    return [dict(r) for r in rows]

def get_conversation(conversation_id, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    sql = "SELECT id, user_id, title, created_at, updated_at FROM conversations WHERE id=?"
    args: Tuple = (conversation_id,)
    if user_id:
        sql += " AND user_id=?"
        args += (user_id,)
    try:
        with _db.db() as conn:
            return _row(conn.execute(sql, args).fetchone())
    except sqlite3.Error as e:
        log(f"[history] [ERROR] fetching conversation {conversation_id}: {e}")
        return None

def create_conversation(title: str, user_id: Optional[str] = None) -> Optional[int]:
    ts = _db.now_iso()
    try:
        with _db.db() as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO conversations(user_id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (user_id or None, title, ts, ts),
            )
            cid = cur.lastrowid
            conn.commit()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] creating conversation: {e}")
        return None
    return cid

def update_conversation_timestamp(conversation_id, user_id: Optional[str] = None) -> bool:
    sql = "UPDATE conversations SET updated_at=? WHERE id=?"
    args: Tuple = (_db.now_iso(), conversation_id)
    if user_id:
        sql += " AND user_id=?"
        args += (user_id,)
    try:
        with _db.db() as conn:
            conn.execute(sql, args)
            conn.commit()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] updating conversation timestamp: {e}")
        return False
    return True

# ---------- messages ----------
def get_messages(conversation_id) -> List[Dict[str, Any]]:
    try:
        with _db.db() as conn:
            rows = conn.execute(
                """SELECT id, conversation_id, role, content, has_image, created_at
                   FROM messages WHERE conversation_id=? ORDER BY created_at ASC, id ASC""",
                (conversation_id,),
            ).fetchall()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] fetching messages: {e}")
        return []
    out = []
    for r in rows:
        m = dict(r)
        m["has_image"] = bool(m["has_image"])
        out.append(m)
    return out

def create_message(conversation_id, role: str, content: str, has_image: bool) -> Optional[int]:
    log(f"[history] Creating {role} message for conversation {conversation_id}: "
        f"content={(content[:30] + '...') if content else 'empty'} has_image={has_image}")
    try:
        with _db.db() as conn:
            cur = conn.cursor()
            cur.execute(
                """INSERT INTO messages(conversation_id, role, content, has_image, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (conversation_id, role, content or "", 1 if has_image else 0, _db.now_iso()),
            )
            mid = cur.lastrowid
            conn.commit()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] creating message: {e}")
        return None
    update_conversation_timestamp(conversation_id)
    return mid

def get_image_rows(message_ids: List[int]) -> List[Dict[str, Any]]:
    if not message_ids:
        return []
    marks = ",".join("?" for _ in message_ids)
    with _db.db() as conn:
        rows = conn.execute(
            f"""SELECT id, message_id, storage_path, original_path, created_at
                FROM images WHERE message_id IN ({marks}) ORDER BY id ASC""",
            tuple(message_ids),
        ).fetchall()
    return [dict(r) for r in rows]

# ---------- images ----------
def _decode_image_data(image_data: str) -> Tuple[str, bytes]:
    """Data URL or bare base64 -> (mime, bytes). The mime comes from the decoded bytes, not the claim."""
    if image_data.startswith("data:"):
        _, raw = parse_data_url(image_data, default_mime="image/png")
    else:
        try:
            raw = base64.b64decode(image_data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ImageInputError(f"Invalid base64 image data: {e}")
    return image_mime(raw), raw

def _store_image_row(message_id, path: str, is_original: bool) -> bool:
    try:
        with _db.db() as conn:
            conn.execute(
                """INSERT INTO images(message_id, storage_path, original_path, created_at)
                   VALUES (?, ?, ?, ?)""",
                (message_id, path, path if is_original else None, _db.now_iso()),
            )
            conn.commit()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] saving image reference: {e}")
        return False
    return True

def upload_bytes(message_id, mime: str, data: bytes, is_original: bool = False) -> Optional[str]:
    if not data:
        log("[history] [ERROR] image data is empty")
        return None
    path = storage.new_path(mime)
    try:
        storage.upload(path, data)
    except (OSError, ValueError) as e:
        log(f"[history] [ERROR] storage upload error: {e}")
        return None
    if not _store_image_row(message_id, path, is_original):
        # keep the bucket free of blobs nothing points to
        storage.remove([path])
        return None
    return storage.public_url(path)

def upload_image(message_id, image_data: str, is_original: bool = False) -> Optional[str]:
    """
    Store one image for a message: blob into the bucket, pointer row into `images`.
    Accepts a data URL or bare base64. Returns the public URL, or None on failure.
    """
    if not image_data:
        log("[history] [ERROR] image data is empty or undefined")
        return None
    try:
        mime, data = _decode_image_data(image_data)
    except ImageInputError as e:
        log(f"[history] [ERROR] {e}")
        return None
    return upload_bytes(message_id, mime, data, is_original)

def _resolve_image(part: HistoryPart) -> Optional[Tuple[str, bytes]]:
    """
    Bytes for an image part. URL parts must point at an existing blob in our
    own bucket; anything else has to be re-encoded as a data URL by the client.
    """
    image = part.image
    if not image:
        return None
    if part.is_image_url or image.startswith(("http://", "https://")):
        path = storage.path_from_public_url(image)
        if path is None or not storage.exists(path):
            raise ImageInputError("Image URLs must point to this server's image storage; "
                                  "send other images as data URLs")
        data = storage.read(path)
        return image_mime(data), data
    return _decode_image_data(image)

def resolve_history_images(history: List[HistoryItem]) -> List[List[Optional[Tuple[str, bytes]]]]:
    """
    (mime, bytes) for every part of every item, None for parts without an image.
    Raises ImageInputError on the first part that is not a usable image.
    """
    return [[_resolve_image(p) for p in item.parts] for item in history]

def _delete_conversation_contents(conversation_id) -> None:
    messages = get_messages(conversation_id)
    if not messages:
        return
    message_ids = [m["id"] for m in messages]
    images = get_image_rows(message_ids)
    paths = set()
    for img in images:
        paths.update(p for p in (img["storage_path"], img["original_path"]) if p)
    storage.remove(sorted(paths))
    marks = ",".join("?" for _ in message_ids)
    with _db.db() as conn:
        conn.execute(f"DELETE FROM images WHERE message_id IN ({marks})", tuple(message_ids))
        conn.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        conn.commit()

# ---------- history conversion ----------
def convert_and_save_history(
    history: List[HistoryItem],
    title: Optional[str] = None,
    existing_conversation_id=None,
    user_id: Optional[str] = None,
    resolved: Optional[List[List[Optional[Tuple[str, bytes]]]]] = None,
) -> Optional[int]:
    """
    Persist the full history under a conversation and return its id.
    Creates the conversation (title derived from the first user prompt) when
    no id is given, otherwise checks that the user owns it. All existing
    messages, image rows and blobs are replaced. Returns None on failure.
    `resolved` is the output of resolve_history_images() when the caller
    already ran it.
    """
    log(f"[history] Saving {len(history)} history item(s), conversation={existing_conversation_id}")
    if resolved is None:
        try:
            # before anything is deleted: URL parts may point at blobs we are about to remove
            resolved = resolve_history_images(history)
        except (ImageInputError, OSError) as e:
            log(f"[history] [ERROR] could not read image data: {e}")
            return None

    conversation_id = existing_conversation_id
    if not conversation_id:
        conversation_id = create_conversation(title or derive_title(history), user_id)
        if not conversation_id:
            log("[history] [ERROR] Failed to create conversation")
            return None
    elif not get_conversation(conversation_id, user_id):
        log(f"[history] [ERROR] Conversation {conversation_id} not found or unauthorized")
        return None

    try:
        _delete_conversation_contents(conversation_id)
    except sqlite3.Error as e:
        log(f"[history] [ERROR] clearing conversation {conversation_id}: {e}")
        return None
    update_conversation_timestamp(conversation_id)

    original_marked = False
    for index, (item, images) in enumerate(zip(history, resolved)):
        has_image = any(images)
        message_id = create_message(conversation_id, item.role, item.text, has_image)
        if not message_id:
            log(f"[history] [WARN] skipped images of unsaved {item.role} message #{index}")
            continue
        for img in images:
            if img is None:
                continue
            is_original = not original_marked and index <= 1
            original_marked = original_marked or is_original
            mime, data = img
            if upload_bytes(message_id, mime, data, is_original) is None:
                log(f"[history] [WARN] image upload failed for message {message_id}")
    return conversation_id

def load_conversation_as_history(conversation_id, user_id: Optional[str] = None) -> List[HistoryItem]:
    if not get_conversation(conversation_id, user_id):
        log(f"[history] [ERROR] Conversation {conversation_id} not found or unauthorized")
        return []
    messages = get_messages(conversation_id)
    log(f"[history] Found {len(messages)} messages for conversation {conversation_id}")
    try:
        images = get_image_rows([m["id"] for m in messages if m["has_image"]])
    except sqlite3.Error as e:
        log(f"[history] [ERROR] fetching images: {e}")
        images = []
    by_message: Dict[int, List[Dict[str, Any]]] = {}
    for img in images:
        by_message.setdefault(img["message_id"], []).append(img)

    history: List[HistoryItem] = []
    for m in messages:
        item = HistoryItem(role=m["role"])
        if m["content"]:
            item.parts.append(HistoryPart(text=m["content"]))
        for img in by_message.get(m["id"], []):
            item.parts.append(HistoryPart(image=storage.public_url(img["storage_path"]), is_image_url=True))
        history.append(item)
    return history

def delete_conversation(conversation_id, user_id: Optional[str] = None) -> bool:
    """
    Remove blobs, then image rows, message rows and the conversation row.
    Steps already done are not undone if a later one fails.
    """
    if not get_conversation(conversation_id, user_id):
        log(f"[history] [ERROR] Conversation {conversation_id} not found or unauthorized")
        return False
    try:
        _delete_conversation_contents(conversation_id)
    except sqlite3.Error as e:
        log(f"[history] [ERROR] deleting messages/images of {conversation_id}: {e}")
    try:
        with _db.db() as conn:
            conn.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
            conn.commit()
    except sqlite3.Error as e:
        log(f"[history] [ERROR] deleting conversation {conversation_id}: {e}")
        return False
    return True

def check_storage_connection() -> Dict[str, Any]:
    """Self-test of the database and the images bucket."""
    try:
        with _db.db() as conn:
            tables = [r["name"] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name").fetchall()]
    except sqlite3.Error as e:
        return {"success": False, "error": f"Database error: {e}", "details": {"database": str(e)}}
    missing = [t for t in ("conversations", "images", "messages") if t not in tables]
    if missing:
        return {"success": False, "error": f"Missing tables: {', '.join(missing)}",
                "details": {"tables": tables}}

    buckets = []
    if os.path.isdir(storage.bucket_dir()):
        buckets.append(storage.BUCKET)
    if storage.BUCKET not in buckets:
        return {"success": False, "error": "Images bucket does not exist", "buckets": buckets,
                "details": {"storage_dir": storage.bucket_dir()}}
    return {"success": True, "buckets": buckets, "details": {"filesCount": len(storage.list_paths())}}
