from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import Path, PurePosixPath

from PIL import Image, UnidentifiedImageError

from app.capabilities.base import UploadError

PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


def _verify_image(data: bytes, mime_type: str) -> None:
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise UploadError(f"Uploaded data is not a valid image: {exc}") from exc

    expected = PIL_FORMATS.get(mime_type)
    if expected and fmt != expected:
        raise UploadError(
            f"Image content is {fmt or 'unknown'} but was declared as {mime_type}"
        )


def _write_file(destination: Path, data: bytes) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    # Refuse to overwrite; destination hints carry a timestamp.
    with destination.open("xb") as fh:
        fh.write(data)


class LocalBlobStorage:
    """Stores blobs under a directory served at ``public_base_url``."""

    def __init__(
        self,
        root: Path,
        public_base_url: str,
        *,
        allowed_types: list[str],
        max_bytes: int,
    ) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.allowed_types = set(allowed_types)
        self.max_bytes = max_bytes

    def _resolve(self, destination_hint: str) -> Path:
        relative = PurePosixPath(destination_hint)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise UploadError(f"Invalid destination: {destination_hint!r}")
        return self.root.joinpath(*relative.parts)

    async def upload_blob(
        self, data: bytes, mime_type: str, destination_hint: str
    ) -> str:
        if mime_type not in self.allowed_types:
            raise UploadError(f"Unsupported image type: {mime_type}")
        if len(data) > self.max_bytes:
            raise UploadError(
                f"Image is too large: {len(data)} bytes (limit {self.max_bytes})"
            )

        destination = self._resolve(destination_hint)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _verify_image, data, mime_type)
        try:
            await loop.run_in_executor(None, _write_file, destination, data)
        except OSError as exc:
            raise UploadError(f"Failed to store image: {exc}") from exc

        return f"{self.public_base_url}/{PurePosixPath(destination_hint)}"
