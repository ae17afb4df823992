from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, TypeVar

T = TypeVar("T")


class CapabilityError(Exception):
    """An external capability call failed. Always retryable."""


class CapabilityTimeoutError(CapabilityError):
    pass


class FetchError(CapabilityError):
    pass


class DescribeError(CapabilityError):
    pass


class TranslateError(CapabilityError):
    pass


class EditError(CapabilityError):
    pass


class UploadError(CapabilityError):
    pass


@dataclass(frozen=True)
class FetchedImage:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class Translation:
    language: str
    translated_text: str | None


class ImageFetcher(Protocol):
    async def fetch_image(self, url: str) -> FetchedImage: ...


class ImageDescriber(Protocol):
    async def describe_image(self, image_bytes: bytes, mime_type: str) -> str: ...


class PromptTranslator(Protocol):
    async def detect_language_and_translate(self, text: str) -> Translation: ...


class ImageEditor(Protocol):
    async def edit_image(
        self,
        image_bytes: bytes,
        mime_type: str,
        description: str,
        instructions: str,
    ) -> bytes: ...


class BlobStorage(Protocol):
    async def upload_blob(
        self, data: bytes, mime_type: str, destination_hint: str
    ) -> str: ...


@dataclass(frozen=True)
class Capabilities:
    """The external services a worker run is allowed to call."""

    fetcher: ImageFetcher
    describer: ImageDescriber
    translator: PromptTranslator
    editor: ImageEditor
    storage: BlobStorage


async def call_with_timeout(call: Awaitable[T], *, timeout: float, name: str) -> T:
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CapabilityTimeoutError(f"{name} timed out after {timeout:g}s") from exc
