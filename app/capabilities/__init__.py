from __future__ import annotations

import aiohttp

from app.capabilities.base import (
    BlobStorage,
    Capabilities,
    CapabilityError,
    CapabilityTimeoutError,
    FetchedImage,
    ImageDescriber,
    ImageEditor,
    ImageFetcher,
    PromptTranslator,
    Translation,
)
from app.capabilities.fetch import HttpImageFetcher
from app.capabilities.gemini import GeminiClient
from app.capabilities.storage import LocalBlobStorage
from app.core.config import Settings


def build_capabilities(settings: Settings, http: aiohttp.ClientSession) -> Capabilities:
    if settings.gemini_api_key is None:
        raise RuntimeError("EDITFORGE_GEMINI_API_KEY is not configured.")

    gemini = GeminiClient.from_api_key(
        settings.gemini_api_key.get_secret_value(),
        vision_model=settings.gemini_vision_model,
        text_model=settings.gemini_text_model,
        image_model=settings.gemini_image_model,
    )
    return Capabilities(
        fetcher=HttpImageFetcher(http),
        describer=gemini,
        translator=gemini,
        editor=gemini,
        storage=LocalBlobStorage(
            settings.storage_path,
            settings.public_base_url,
            allowed_types=settings.allowed_image_types,
            max_bytes=settings.max_upload_bytes,
        ),
    )


__all__ = [
    "BlobStorage",
    "Capabilities",
    "CapabilityError",
    "CapabilityTimeoutError",
    "FetchedImage",
    "ImageDescriber",
    "ImageEditor",
    "ImageFetcher",
    "PromptTranslator",
    "Translation",
    "build_capabilities",
]
