import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class JobStage(str, enum.Enum):
    pending_describe = "pending_describe"
    describing_image = "describing_image"
    pending_translate = "pending_translate"
    translating_prompt = "translating_prompt"
    pending_edit = "pending_edit"
    editing_image = "editing_image"
    uploading_result = "uploading_result"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


# Stages a worker may claim. ``uploading_result`` is both the claimable and the
# in-progress form of the upload step; the lease tells the two apart.
PICKUP_STAGES = frozenset(
    {
        JobStage.pending_describe,
        JobStage.pending_translate,
        JobStage.pending_edit,
        JobStage.uploading_result,
    }
)
TERMINAL_STAGES = frozenset({JobStage.completed, JobStage.failed})


class Job(TimestampMixin, Base):
    """Execution state driving one Edit through the pipeline."""

    __tablename__ = "image_processing_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    edit_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    current_stage: Mapped[JobStage] = mapped_column(
        Enum(JobStage, name="processing_stage"),
        index=True,
        nullable=False,
        default=JobStage.pending_describe,
    )
    stage_payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True, nullable=True
    )


# Claimable stage -> the stage written while a worker holds it.
WORKING_STAGES = {
    JobStage.pending_describe: JobStage.describing_image,
    JobStage.pending_translate: JobStage.translating_prompt,
    JobStage.pending_edit: JobStage.editing_image,
    JobStage.uploading_result: JobStage.uploading_result,
}
# Working stage -> the claimable stage it falls back to after a failure.
RETRY_STAGES = {working: pending for pending, working in WORKING_STAGES.items()}
