from __future__ import annotations

import asyncio
from io import BytesIO

from google import genai
from google.genai import errors, types
from PIL import Image

from app.capabilities.base import (
    DescribeError,
    EditError,
    TranslateError,
    Translation,
)
from app.capabilities.storage import PIL_FORMATS

DESCRIBE_PROMPT = (
    "Describe this image in detail. Focus on the main subjects, colors, setting, "
    "and any notable elements. Keep it concise but comprehensive."
)
DETECT_PROMPT = (
    'Detect the language of the following text and respond with only "ar" for '
    'Arabic or "en" for English or other languages: "{text}"'
)
TRANSLATE_PROMPT = 'Translate the following Arabic text to English: "{text}"'
EDIT_PROMPT = """I have an image that I want to edit. Here's a description of the original image:
"{description}"

Edit the image according to these instructions:
"{instructions}"

Return the edited image."""


def _convert_image(data: bytes, mime_type: str) -> bytes:
    target = PIL_FORMATS.get(mime_type)
    with Image.open(BytesIO(data)) as img:
        if target is None or (img.format or "").upper() == target:
            return data
        if target == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = BytesIO()
        img.save(out, format=target)
    return out.getvalue()


class GeminiClient:
    """Vision, translation and image editing backed by the Gemini API."""

    def __init__(
        self,
        client: genai.Client,
        *,
        vision_model: str,
        text_model: str,
        image_model: str,
    ) -> None:
        self._client = client
        self.vision_model = vision_model
        self.text_model = text_model
        self.image_model = image_model

    @classmethod
    def from_api_key(cls, api_key: str, **models: str) -> "GeminiClient":
        return cls(genai.Client(api_key=api_key), **models)

    async def _generate_text(self, model: str, contents: list) -> str:
        response = await self._client.aio.models.generate_content(
            model=model, contents=contents
        )
        return (response.text or "").strip()

    async def describe_image(self, image_bytes: bytes, mime_type: str) -> str:
        try:
            description = await self._generate_text(
                self.vision_model,
                [
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    DESCRIBE_PROMPT,
                ],
            )
        except errors.APIError as exc:
            raise DescribeError(f"Failed to describe image: {exc}") from exc
        if not description:
            raise DescribeError("Model returned an empty image description")
        return description

    async def detect_language_and_translate(self, text: str) -> Translation:
        try:
            language = await self._generate_text(
                self.text_model, [DETECT_PROMPT.format(text=text)]
            )
            language = language.strip('"').lower()
            translated = None
            if language == "ar":
                translated = await self._generate_text(
                    self.text_model, [TRANSLATE_PROMPT.format(text=text)]
                )
        except errors.APIError as exc:
            raise TranslateError(f"Failed to translate prompt: {exc}") from exc
        if language not in ("ar", "en"):
            language = "en"
        return Translation(language=language, translated_text=translated or None)

    async def edit_image(
        self,
        image_bytes: bytes,
        mime_type: str,
        description: str,
        instructions: str,
    ) -> bytes:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.image_model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    EDIT_PROMPT.format(
                        description=description, instructions=instructions
                    ),
                ],
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE", "TEXT"]
                ),
            )
        except errors.APIError as exc:
            raise EditError(f"Failed to edit image: {exc}") from exc

        for candidate in response.candidates or []:
            if candidate.content is None:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data is not None and part.inline_data.data:
                    loop = asyncio.get_running_loop()
                    return await loop.run_in_executor(
                        None, _convert_image, part.inline_data.data, mime_type
                    )
        raise EditError("Model response did not contain an edited image")
