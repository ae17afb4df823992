"""Stage executor for image edit jobs.

Decides, for a job's current stage, which capability runs next, which payload
fields it needs, what it writes and where the job goes afterwards. Persistence
is left to the caller; this module only touches the capabilities it is handed.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.capabilities.base import Capabilities, call_with_timeout
from app.models.base import utcnow
from app.models.edit import EditStatus
from app.models.job import RETRY_STAGES, WORKING_STAGES, JobStage
from app.schemas.payload import (
    DescribeResult,
    EditResult,
    StagePayload,
    TranslateResult,
    UploadResult,
)

STAGE_ORDER = (
    JobStage.pending_describe,
    JobStage.describing_image,
    JobStage.pending_translate,
    JobStage.translating_prompt,
    JobStage.pending_edit,
    JobStage.editing_image,
    JobStage.uploading_result,
    JobStage.completed,
)

# A claimable stage and its working form are the same pipeline step.
STAGE_STEPS: dict[JobStage, int] = {
    JobStage.pending_describe: 0,
    JobStage.describing_image: 0,
    JobStage.pending_translate: 1,
    JobStage.translating_prompt: 1,
    JobStage.pending_edit: 2,
    JobStage.editing_image: 2,
    JobStage.uploading_result: 3,
    JobStage.completed: 4,
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class MissingFieldError(Exception):
    """A stage's input is absent from the payload; the capability is not called."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"missing required field: {field_name}")
        self.field_name = field_name


@dataclass(frozen=True)
class StageContext:
    user_id: str
    payload: StagePayload
    capabilities: Capabilities
    timeout: float
    now: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StageResult:
    payload: StagePayload
    edit_updates: dict[str, Any]


StageRunner = Callable[[StageContext], Awaitable[StageResult]]


@dataclass(frozen=True)
class Transition:
    stage: JobStage
    next_stage: JobStage
    required: tuple[str, ...]
    run: StageRunner
    any_of: tuple[str, ...] = ()
    # Run the next transition straight away under the same lease.
    chain: bool = False

    @property
    def working_stage(self) -> JobStage:
        return WORKING_STAGES[self.stage]


def stage_step(stage: JobStage) -> int:
    """Position of ``stage`` in the pipeline; ``failed`` sorts after everything."""
    return STAGE_STEPS.get(stage, len(STAGE_ORDER))


def next_stage_after_failure(
    stage: JobStage, retry_count: int, max_retries: int
) -> tuple[int, JobStage]:
    new_count = retry_count + 1
    if new_count >= max_retries:
        return new_count, JobStage.failed
    return new_count, RETRY_STAGES.get(stage, stage)


def validate_payload(transition: Transition, payload: StagePayload) -> None:
    missing = payload.missing(*transition.required)
    if missing:
        raise MissingFieldError(missing[0])
    if transition.any_of and len(payload.missing(*transition.any_of)) == len(
        transition.any_of
    ):
        raise MissingFieldError(payload.missing(*transition.any_of)[0])


def edited_image_destination(user_id: str, filename: str, now: datetime) -> str:
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", f"edited_{filename}")
    return f"{user_id}/{int(now.timestamp() * 1000)}_{sanitized}"


async def _describe(ctx: StageContext) -> StageResult:
    caps = ctx.capabilities
    image = await call_with_timeout(
        caps.fetcher.fetch_image(ctx.payload.original_image_url),
        timeout=ctx.timeout,
        name="fetch_image",
    )
    description = await call_with_timeout(
        caps.describer.describe_image(image.data, image.mime_type),
        timeout=ctx.timeout,
        name="describe_image",
    )
    return StageResult(
        payload=ctx.payload.extend(DescribeResult(ai_image_description=description)),
        edit_updates={"image_description_ai": description},
    )


async def _translate(ctx: StageContext) -> StageResult:
    user_prompt = ctx.payload.user_prompt
    translation = await call_with_timeout(
        ctx.capabilities.translator.detect_language_and_translate(user_prompt),
        timeout=ctx.timeout,
        name="detect_language_and_translate",
    )
    result = TranslateResult(
        prompt_language=translation.language,
        translated_user_prompt=translation.translated_text or user_prompt,
    )
    return StageResult(
        payload=ctx.payload.extend(result),
        edit_updates={"user_prompt_translated": translation.translated_text or None},
    )


async def _edit(ctx: StageContext) -> StageResult:
    caps = ctx.capabilities
    payload = ctx.payload
    image = await call_with_timeout(
        caps.fetcher.fetch_image(payload.original_image_url),
        timeout=ctx.timeout,
        name="fetch_image",
    )
    edited = await call_with_timeout(
        caps.editor.edit_image(
            image.data,
            image.mime_type,
            payload.ai_image_description,
            payload.translated_user_prompt or payload.user_prompt,
        ),
        timeout=ctx.timeout,
        name="edit_image",
    )
    result = EditResult(
        edited_image_encoding=base64.b64encode(edited).decode("ascii"),
        edited_image_mime_type=image.mime_type,
    )
    return StageResult(payload=payload.extend(result), edit_updates={})


async def _upload(ctx: StageContext) -> StageResult:
    payload = ctx.payload
    try:
        data = base64.b64decode(payload.edited_image_encoding, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"editedImageEncoding is not valid base64: {exc}") from exc

    mime_type = payload.edited_image_mime_type or "image/jpeg"
    destination = edited_image_destination(
        ctx.user_id, payload.original_image_filename or "image.jpg", ctx.now
    )
    public_url = await call_with_timeout(
        ctx.capabilities.storage.upload_blob(data, mime_type, destination),
        timeout=ctx.timeout,
        name="upload_blob",
    )
    filename = destination.rsplit("/", 1)[-1]
    return StageResult(
        payload=payload.extend(
            UploadResult(edited_image_url=public_url, edited_image_filename=filename)
        ),
        edit_updates={
            "edited_image_url": public_url,
            "edited_image_filename": filename,
            "status": EditStatus.completed,
        },
    )


TRANSITIONS: dict[JobStage, Transition] = {
    JobStage.pending_describe: Transition(
        stage=JobStage.pending_describe,
        next_stage=JobStage.pending_translate,
        required=("original_image_url",),
        run=_describe,
    ),
    JobStage.pending_translate: Transition(
        stage=JobStage.pending_translate,
        next_stage=JobStage.pending_edit,
        required=("user_prompt",),
        run=_translate,
    ),
    JobStage.pending_edit: Transition(
        stage=JobStage.pending_edit,
        next_stage=JobStage.uploading_result,
        required=("original_image_url", "ai_image_description"),
        any_of=("translated_user_prompt", "user_prompt"),
        run=_edit,
        chain=True,
    ),
    JobStage.uploading_result: Transition(
        stage=JobStage.uploading_result,
        next_stage=JobStage.completed,
        required=("edited_image_encoding",),
        run=_upload,
    ),
}


def transition_for(stage: JobStage) -> Transition:
    """Return the transition that runs from ``stage`` (claimable or working form)."""
    try:
        return TRANSITIONS[RETRY_STAGES.get(stage, stage)]
    except KeyError:
        raise ValueError(f"No transition runs from stage {stage.value!r}") from None


async def execute_stage(
    transition: Transition,
    *,
    user_id: str,
    payload: StagePayload,
    capabilities: Capabilities,
    timeout: float,
    now: datetime | None = None,
) -> StageResult:
    """Validate the payload and run one transition's capability calls."""
    validate_payload(transition, payload)
    ctx = StageContext(
        user_id=user_id,
        payload=payload,
        capabilities=capabilities,
        timeout=timeout,
        now=now or utcnow(),
    )
    return await transition.run(ctx)
