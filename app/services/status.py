from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.job import JobStage
from app.services.jobs import get_job_for_user

# Bulky intermediates that pollers never need.
HIDDEN_PAYLOAD_KEYS = frozenset({"editedImageEncoding"})


class JobNotFoundError(Exception):
    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


@dataclass(frozen=True)
class JobStatus:
    stage: JobStage
    payload: dict[str, Any]
    retry_count: int
    last_error: str | None
    updated_at: datetime


async def get_job_status(
    *, session: AsyncSession, job_id: UUID, user_id: str
) -> JobStatus:
    """Read-only progress view of a job owned by ``user_id``.

    Jobs owned by someone else are reported as missing.
    """
    job = await get_job_for_user(session=session, job_id=job_id, user_id=user_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return JobStatus(
        stage=job.current_stage,
        payload={
            key: value
            for key, value in (job.stage_payload or {}).items()
            if key not in HIDDEN_PAYLOAD_KEYS
        },
        retry_count=job.retry_count,
        last_error=job.last_error,
        updated_at=job.updated_at,
    )
