import pytest

from app.capabilities.base import UploadError
from app.capabilities.storage import LocalBlobStorage

from conftest import image_bytes


@pytest.fixture
def storage(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(
        tmp_path / "media",
        "https://media.test/",
        allowed_types=["image/jpeg", "image/png", "image/webp"],
        max_bytes=64 * 1024,
    )


async def test_upload_writes_file_and_returns_public_url(storage):
    data = image_bytes("PNG")

    url = await storage.upload_blob(data, "image/png", "user-1/1700000000000_edited_a.png")

    assert url == "https://media.test/user-1/1700000000000_edited_a.png"
    assert (storage.root / "user-1" / "1700000000000_edited_a.png").read_bytes() == data


async def test_upload_refuses_to_overwrite(storage):
    await storage.upload_blob(image_bytes("PNG"), "image/png", "user-1/a.png")
    with pytest.raises(UploadError):
        await storage.upload_blob(image_bytes("PNG"), "image/png", "user-1/a.png")


@pytest.mark.parametrize(
    ("data", "mime_type", "destination"),
    [
        (image_bytes("PNG"), "image/gif", "user-1/a.gif"),
        (image_bytes("PNG"), "image/jpeg", "user-1/a.jpg"),
        (b"not an image", "image/png", "user-1/a.png"),
        (b"\x00" * (64 * 1024 + 1), "image/png", "user-1/a.png"),
        (image_bytes("PNG"), "image/png", "../escape.png"),
        (image_bytes("PNG"), "image/png", "/abs.png"),
    ],
)
async def test_upload_rejects_bad_input(storage, data, mime_type, destination):
    with pytest.raises(UploadError):
        await storage.upload_blob(data, mime_type, destination)
    assert not storage.root.exists() or not any(p.is_file() for p in storage.root.rglob("*"))
