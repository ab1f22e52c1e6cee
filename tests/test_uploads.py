import io
from urllib.parse import parse_qs, urlsplit

import pytest
from PIL import Image

from errors import NotFoundError, UploadError
from uploads import ImageStorage


def _image(fmt="PNG", size=(40, 30), mode="RGB", color=(200, 10, 10)):
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def _query(url):
    query = parse_qs(urlsplit(url).query)
    return int(query["expires"][0]), query["signature"][0]


@pytest.fixture
def storage(tmp_path):
    return ImageStorage(str(tmp_path), "test-key", max_bytes=1024 * 1024, url_ttl_s=3600)


def test_png_is_reencoded_as_jpeg(storage, tmp_path):
    saved = storage.save("screenshots", "bugs/u1", _image())

    assert saved["key"].startswith("screenshots/bugs/u1/")
    assert saved["key"].endswith(".jpg")
    assert saved["url"].startswith(f"/files/{saved['key']}?")
    with Image.open(tmp_path / saved["key"]) as img:
        assert img.format == "JPEG"
        assert img.size == (40, 30)


def test_transparency_is_flattened_on_white(storage, tmp_path):
    saved = storage.save("screenshots", "", _image(mode="RGBA", color=(0, 0, 0, 0)))
    with Image.open(tmp_path / saved["key"]) as img:
        r, g, b = img.convert("RGB").getpixel((5, 5))
    assert min(r, g, b) > 240


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"not an image at all",
        _image(fmt="BMP"),
        _image(size=(8193, 1)),
    ],
)
def test_rejected_uploads(storage, data):
    with pytest.raises(UploadError) as excinfo:
        storage.save("screenshots", "u1", data)
    assert excinfo.value.status_code == 400


def test_size_limit(tmp_path):
    storage = ImageStorage(str(tmp_path), "k", max_bytes=10)
    with pytest.raises(UploadError) as excinfo:
        storage.save("screenshots", "u1", _image())
    assert "less than" in excinfo.value.message


def test_path_traversal_is_rejected(storage):
    with pytest.raises(UploadError):
        storage.save("screenshots", "../etc", _image())
    with pytest.raises(UploadError):
        storage.save("", "", _image())
    with pytest.raises(UploadError):
        storage.delete("screenshots/../../secret.jpg")


def test_signed_url_verification_and_expiry(storage):
    saved = storage.save("screenshots", "u1", _image())
    expires, signature = _query(saved["url"])

    assert storage.open(saved["key"], expires, signature).is_file()
    assert storage.verify(saved["key"], expires, signature)
    assert not storage.verify(saved["key"], expires, "0" * 64)
    assert not storage.verify("screenshots/u1/other.jpg", expires, signature)
    assert not storage.verify(saved["key"], expires, signature, now=expires + 1)

    with pytest.raises(UploadError) as excinfo:
        storage.open(saved["key"], expires, "bad")
    assert excinfo.value.status_code == 403


def test_signed_url_uses_ttl(storage):
    expires, _ = _query(storage.signed_url("screenshots/a.jpg", now=1000))
    assert expires == 4600


def test_delete(storage):
    saved = storage.save("screenshots", "u1", _image())
    expires, signature = _query(saved["url"])

    assert storage.delete(saved["key"]) is True
    assert storage.delete(saved["key"]) is False
    with pytest.raises(NotFoundError):
        storage.open(saved["key"], expires, signature)
