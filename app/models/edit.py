import enum
import uuid

from sqlalchemy import Enum, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class EditStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class Edit(TimestampMixin, Base):
    """User-facing record of one image editing request."""

    __tablename__ = "edits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True, nullable=False)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, unique=True, nullable=True)
    original_image_url: Mapped[str] = mapped_column(Text, nullable=False)
    original_image_filename: Mapped[str] = mapped_column(Text, nullable=False)
    edited_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    edited_image_filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_prompt_original: Mapped[str] = mapped_column(Text, nullable=False)
    user_prompt_translated: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_description_ai: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[EditStatus] = mapped_column(
        Enum(EditStatus, name="edit_status"),
        index=True,
        nullable=False,
        default=EditStatus.pending,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
