import base64
import os

import pytest

from conftest import data_url, image_bytes
from imagechat import db as _db
from imagechat.models import HistoryItem, HistoryPart
from imagechat.services import history, storage
from imagechat.services.image_utils import ImageInputError


def sample_history():
    return [
        HistoryItem("user", [HistoryPart(text="a red bicycle on a beach at sunset, wide shot"),
                             HistoryPart(image=data_url("JPEG"))]),
        HistoryItem("model", [HistoryPart(text="Here it is"), HistoryPart(image=data_url("PNG"))]),
        HistoryItem("user", [HistoryPart(text="make it blue")]),
        HistoryItem("model", [HistoryPart(image=data_url("PNG", color=(0, 0, 200)))]),
    ]

def count(table, where="", args=()):
    with _db.db() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table} {where}", args).fetchone()[0]


def test_save_creates_conversation_with_derived_title(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    assert cid
    conv = history.get_conversation(cid, "u1")
    assert conv["title"] == "a red bicycle on a beach at su"
    assert len(conv["title"]) == 30
    assert conv["user_id"] == "u1"


def test_default_title_without_user_text(env):
    cid = history.convert_and_save_history([HistoryItem("model", [HistoryPart(image=data_url())])], user_id="u1")
    assert history.get_conversation(cid)["title"] == "New Conversation"


def test_explicit_title_wins(env):
    cid = history.convert_and_save_history(sample_history(), title="Bikes", user_id="u1")
    assert history.get_conversation(cid)["title"] == "Bikes"


def test_round_trip(env):
    src = sample_history()
    cid = history.convert_and_save_history(src, user_id="u1")
    loaded = history.load_conversation_as_history(cid, "u1")

    assert [i.role for i in loaded] == [i.role for i in src]
    assert sum(1 for i in loaded if i.text) == sum(1 for i in src if i.text)
    for before, after in zip(src, loaded):
        assert after.text == before.text
        assert after.has_image == before.has_image
    for item in loaded:
        for part in item.parts:
            if part.image:
                assert part.is_image_url
                assert part.image.startswith("http://testserver/storage/images/")


def test_messages_and_images_rows(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    msgs = history.get_messages(cid)
    assert [m["has_image"] for m in msgs] == [True, True, False, True]
    assert count("images") == 3
    assert len(storage.list_paths()) == 3


def test_only_first_image_is_original(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    ids = [m["id"] for m in history.get_messages(cid)]
    rows = history.get_image_rows(ids)
    originals = [r for r in rows if r["original_path"]]
    assert len(originals) == 1
    assert originals[0]["message_id"] == ids[0]
    assert originals[0]["original_path"] == originals[0]["storage_path"]


def test_resave_replaces_rows_and_blobs(env):
    h = sample_history()
    cid = history.convert_and_save_history(h, user_id="u1")
    old_paths = set(storage.list_paths())

    h.append(HistoryItem("user", [HistoryPart(text="add a dog")]))
    assert history.convert_and_save_history(h, existing_conversation_id=cid, user_id="u1") == cid

    assert count("messages", "WHERE conversation_id=?", (cid,)) == 5
    assert count("images") == 3
    new_paths = set(storage.list_paths())
    assert len(new_paths) == 3
    assert not (old_paths & new_paths)


def test_resave_of_loaded_history_keeps_images(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    loaded = history.load_conversation_as_history(cid, "u1")
    loaded.append(HistoryItem("user", [HistoryPart(text="more contrast")]))

    assert history.convert_and_save_history(loaded, existing_conversation_id=cid, user_id="u1") == cid
    again = history.load_conversation_as_history(cid, "u1")
    assert sum(1 for i in again if i.has_image) == 3
    assert len(storage.list_paths()) == 3


def test_save_rejects_foreign_conversation(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    assert history.convert_and_save_history(sample_history(), existing_conversation_id=cid, user_id="u2") is None
    assert count("messages", "WHERE conversation_id=?", (cid,)) == 4


def test_load_foreign_or_missing_is_empty(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    assert history.load_conversation_as_history(cid, "u2") == []
    assert history.load_conversation_as_history(9999, "u1") == []


def test_delete_removes_only_that_conversation(env):
    keep = history.convert_and_save_history(sample_history(), user_id="u1")
    gone = history.convert_and_save_history(sample_history(), user_id="u1")
    keep_paths = set(storage.list_paths())
    gone_ids = [m["id"] for m in history.get_messages(gone)]
    keep_paths -= {r["storage_path"] for r in history.get_image_rows(gone_ids)}

    assert history.delete_conversation(gone, "u1") is True

    assert history.get_conversation(gone) is None
    assert count("messages", "WHERE conversation_id=?", (gone,)) == 0
    assert history.get_image_rows(gone_ids) == []
    assert count("messages", "WHERE conversation_id=?", (keep,)) == 4
    assert set(storage.list_paths()) == keep_paths
    assert len(history.load_conversation_as_history(keep, "u1")) == 4


def test_delete_requires_ownership(env):
    cid = history.convert_and_save_history(sample_history(), user_id="u1")
    assert history.delete_conversation(cid, "u2") is False
    assert history.get_conversation(cid) is not None


def test_conversations_listed_newest_first(env):
    first = history.convert_and_save_history(sample_history(), user_id="u1")
    second = history.convert_and_save_history(sample_history(), user_id="u1")
    history.convert_and_save_history(sample_history(), user_id="u2")
    assert [c["id"] for c in history.get_conversations("u1")] == [second, first]
    history.update_conversation_timestamp(first)
    assert [c["id"] for c in history.get_conversations("u1")][0] == first


def test_upload_image_accepts_bare_base64(env):
    cid = history.create_conversation("t", "u1")
    mid = history.create_message(cid, "user", "hi", True)
    url = history.upload_image(mid, base64.b64encode(image_bytes("PNG")).decode())
    assert url.endswith(".png")
    path = storage.path_from_public_url(url)
    assert os.path.isfile(os.path.join(storage.bucket_dir(), path))


def test_upload_image_rejects_empty(env):
    cid = history.create_conversation("t", "u1")
    mid = history.create_message(cid, "user", "hi", True)
    assert history.upload_image(mid, "") is None
    assert history.upload_image(mid, "data:image/png;base64,") is None
    assert storage.list_paths() == []


def test_storage_self_check(env):
    result = history.check_storage_connection()
    assert result["success"] is True
    assert result["buckets"] == ["images"]


def test_foreign_image_urls_are_never_fetched(env, monkeypatch):
    import requests
    fetched = []
    monkeypatch.setattr(requests, "get", lambda *a, **k: fetched.append(a) or pytest.fail("fetched"))
    monkeypatch.setattr(requests.Session, "request", lambda *a, **k: fetched.append(a) or pytest.fail("fetched"))

    for url in ("http://127.0.0.1:9/latest/meta-data", "http://testserver/storage/images/missing.png"):
        h = [HistoryItem("user", [HistoryPart(text="hi"), HistoryPart(image=url, is_image_url=True)])]
        with pytest.raises(ImageInputError):
            history.resolve_history_images(h)
        assert history.convert_and_save_history(h, user_id="attacker") is None

    assert fetched == []
    assert storage.list_paths() == []
    assert history.get_conversations("attacker") == []


def test_non_image_payloads_are_rejected(env):
    text = "data:image/png;base64," + base64.b64encode(b"internal-only-secret-token").decode()
    h = [HistoryItem("user", [HistoryPart(text="hi"), HistoryPart(image=text)])]
    with pytest.raises(ImageInputError):
        history.resolve_history_images(h)
    assert history.convert_and_save_history(h, user_id="u1") is None
    assert storage.list_paths() == []


def test_stored_mime_follows_bytes_not_claim(env):
    jpeg_claiming_png = "data:image/png;base64," + base64.b64encode(image_bytes("JPEG")).decode()
    h = [HistoryItem("user", [HistoryPart(text="hi"), HistoryPart(image=jpeg_claiming_png)])]
    cid = history.convert_and_save_history(h, user_id="u1")
    (path,) = storage.list_paths()
    assert path.endswith(".jpg")
    assert history.load_conversation_as_history(cid, "u1")[0].has_image
