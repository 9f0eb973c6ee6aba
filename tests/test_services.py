import base64
from io import BytesIO

import pytest
from PIL import Image

from conftest import data_url, image_bytes
from imagechat.services import imagen, storage
from imagechat.services.errors import GenerationError, UpstreamError
from imagechat.services.image_utils import (
    ImageInputError, data_url_size, format_file_size, image_mime, optimize_image, parse_data_url,
    sniff_mime,
)


def size_of(url):
    _, raw = parse_data_url(url)
    with Image.open(BytesIO(raw)) as im:
        return im.format, im.size


def test_parse_data_url():
    mime, raw = parse_data_url(data_url("PNG"))
    assert mime == "image/png"
    assert raw.startswith(b"\x89PNG")
    with pytest.raises(ImageInputError, match="Invalid image input"):
        parse_data_url(None)
    with pytest.raises(ImageInputError, match="Invalid image data URL format"):
        parse_data_url("aGVsbG8=")


def test_optimize_keeps_small_png_and_converts_others():
    assert size_of(optimize_image(data_url("PNG", size=(300, 200)))) == ("PNG", (300, 200))
    buf = BytesIO()
    Image.new("RGBA", (2000, 500), (0, 0, 0, 0)).save(buf, format="WEBP")
    webp = "data:image/webp;base64," + base64.b64encode(buf.getvalue()).decode()
    assert size_of(optimize_image(webp)) == ("JPEG", (1024, 256))


def test_optimize_rejects_garbage():
    with pytest.raises(ImageInputError):
        optimize_image("data:image/png;base64," + base64.b64encode(b"nope").decode())


def test_sizes():
    assert data_url_size("data:image/png;base64,AAAA") == 3
    assert data_url_size(None) == 0
    assert format_file_size(512) == "512 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(2 * 1024 * 1024) == "2.0 MB"
    assert sniff_mime(image_bytes("JPEG")) == "image/jpeg"
    assert sniff_mime(b"??", default="x") == "x"


def test_with_retry_counts_attempts():
    calls, sleeps = [], []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("boom")
        return "ok"

    assert imagen.with_retry(flaky, attempts=3, initial_delay=0.5, sleep=sleeps.append) == "ok"
    assert sleeps == [0.5, 1.0]

    calls.clear()
    with pytest.raises(RuntimeError):
        imagen.with_retry(flaky, attempts=2, sleep=sleeps.append)
    assert len(calls) == 2


def test_upstream_error_mapping():
    err = GenerationError.from_upstream(UpstreamError("Unexpected token '<'"))
    assert err.status == 500 and err.possible_cause
    assert GenerationError.from_upstream(UpstreamError("x", no_image=True)).to_dict() == {
        "error": "No image generated in response"}
    plain = GenerationError.from_upstream(UpstreamError("quota")).to_dict()
    assert plain == {"error": "Failed to generate image", "details": "quota"}


def test_storage_paths(env):
    path = storage.new_path("image/jpeg")
    assert path.endswith(".jpg")
    storage.upload(path, b"abc")
    assert storage.exists(path) and storage.read(path) == b"abc"
    url = storage.public_url(path)
    assert storage.path_from_public_url(url) == path
    assert storage.path_from_public_url("https://elsewhere/x.png") is None
    assert not storage.exists("../app.db")
    with pytest.raises(ValueError):
        storage.upload("../escape.png", b"x")
    assert storage.remove([path, path, None]) == 1
    assert storage.list_paths() == []


def test_image_mime_requires_decodable_image():
    assert image_mime(image_bytes("JPEG")) == "image/jpeg"
    assert image_mime(image_bytes("PNG")) == "image/png"
    for junk in (b"", b"internal-only-secret-token", b"<html>nope</html>"):
        with pytest.raises(ImageInputError):
            image_mime(junk)
