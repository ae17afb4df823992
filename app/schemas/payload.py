"""Typed views over a job's stage payload.

The payload is persisted as a JSON object with camelCase keys. ``StagePayload``
is the accumulated shape; every stage transition produces one of the small
result models below, and ``StagePayload.extend`` folds it in. Keys are only
ever added or refreshed, never removed, so a failed job still shows everything
earlier stages produced.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _PayloadModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StagePayload(_PayloadModel):
    original_image_url: str | None = None
    original_image_filename: str | None = None
    user_prompt: str | None = None
    ai_image_description: str | None = None
    prompt_language: str | None = None
    translated_user_prompt: str | None = None
    edited_image_encoding: str | None = None
    edited_image_mime_type: str | None = None
    edited_image_url: str | None = None
    edited_image_filename: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> "StagePayload":
        return cls.model_validate(data or {})

    def missing(self, *fields: str) -> list[str]:
        """Return the camelCase names of ``fields`` that are unset or empty."""
        return [to_camel(name) for name in fields if not getattr(self, name, None)]

    def extend(self, result: _PayloadModel) -> "StagePayload":
        merged = self.to_json()
        merged.update(result.to_json())
        return StagePayload.from_json(merged)


class SubmittedPayload(_PayloadModel):
    original_image_url: str
    original_image_filename: str
    user_prompt: str


class DescribeResult(_PayloadModel):
    ai_image_description: str


class TranslateResult(_PayloadModel):
    prompt_language: str
    translated_user_prompt: str


class EditResult(_PayloadModel):
    edited_image_encoding: str
    edited_image_mime_type: str


class UploadResult(_PayloadModel):
    edited_image_url: str
    edited_image_filename: str
