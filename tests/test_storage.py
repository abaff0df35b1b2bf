import os

import pytest

from services import storage_service as storage
from services.errors import InvalidInput, NotFound, PayloadTooLarge

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def test_upload_stores_under_owner(alice):
    result = storage.upload(alice["id"], "holiday photo.png", PNG, "image/png")
    assert result["url"] == storage.FILES_PREFIX + result["path"]
    assert result["path"].startswith(alice["id"] + "/")
    assert result["path"].endswith("_holiday_photo.png")
    assert result["size"] == len(PNG)
    with open(storage.resolve(result["path"]), "rb") as f:
        assert f.read() == PNG


def test_upload_strips_directories_from_filename():
    result = storage.upload("owner", "../../etc/passwd", PNG, "image/png")
    assert result["path"].startswith("owner/")
    assert result["path"].endswith("_passwd.png")
    assert os.path.isfile(storage.resolve(result["path"]))


def test_upload_extension_follows_declared_type():
    result = storage.upload("owner", "x.html", b"<script>alert(1)</script>", "image/png")
    assert result["path"].endswith("_x.png")
    assert storage.media_type(result["path"]) == "image/png"

    jpeg = storage.upload("owner", "photo.JPEG", PNG, "image/jpeg")
    assert jpeg["path"].endswith("_photo.jpg")


def test_upload_rejects_other_types_and_empty_files():
    with pytest.raises(InvalidInput):
        storage.upload("owner", "notes.txt", b"hello", "text/plain")
    with pytest.raises(InvalidInput):
        storage.upload("owner", "empty.png", b"", "image/png")


def test_upload_size_limit(monkeypatch):
    monkeypatch.setattr(storage, "MAX_UPLOAD_BYTES", 16)
    with pytest.raises(PayloadTooLarge):
        storage.upload("owner", "big.png", PNG, "image/png")


@pytest.mark.parametrize("path", ["../outside.png", "owner/../../outside.png", "", "owner/missing.png"])
def test_resolve_refuses_traversal_and_missing_files(path):
    with pytest.raises(NotFound):
        storage.resolve(path)
