from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.edit import Edit, EditStatus
from app.models.job import (
    PICKUP_STAGES,
    RETRY_STAGES,
    TERMINAL_STAGES,
    Job,
    JobStage,
)
from app.schemas.payload import StagePayload, SubmittedPayload
from app.services.pipeline import next_stage_after_failure


@dataclass(frozen=True)
class RecoveredLease:
    job_id: UUID
    expired_stage: JobStage
    stage: JobStage
    retry_count: int


class LeaseLostError(Exception):
    """The worker no longer owns the job it is trying to write."""

    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Lease on job {job_id} was lost")
        self.job_id = job_id


async def enqueue_job(redis: Redis, queue_name: str, job_id: UUID) -> None:
    await redis.lpush(queue_name, str(job_id))


async def create_edit_job(
    *,
    session: AsyncSession,
    user_id: str,
    original_image_url: str,
    original_image_filename: str,
    user_prompt: str,
) -> tuple[Edit, Job]:
    edit = Edit(
        user_id=user_id,
        original_image_url=original_image_url,
        original_image_filename=original_image_filename,
        user_prompt_original=user_prompt,
        status=EditStatus.pending,
    )
    session.add(edit)
    await session.flush()

    payload = SubmittedPayload(
        original_image_url=original_image_url,
        original_image_filename=original_image_filename,
        user_prompt=user_prompt,
    )
    job = Job(
        edit_id=edit.id,
        user_id=user_id,
        current_stage=JobStage.pending_describe,
        stage_payload=payload.to_json(),
        retry_count=0,
    )
    session.add(job)
    await session.flush()

    edit.job_id = job.id
    await session.commit()
    await session.refresh(edit)
    await session.refresh(job)
    return edit, job


async def get_job(*, session: AsyncSession, job_id: UUID) -> Job | None:
    return await session.get(Job, job_id)


async def get_edit(*, session: AsyncSession, edit_id: UUID) -> Edit | None:
    return await session.get(Edit, edit_id)


async def get_job_for_user(
    *, session: AsyncSession, job_id: UUID, user_id: str
) -> Job | None:
    result = await session.execute(
        select(Job).where(Job.id == job_id, Job.user_id == user_id)
    )
    return result.scalars().first()


async def list_eligible_jobs(
    *, session: AsyncSession, limit: int, max_retries: int
) -> list[Job]:
    stmt: Select[tuple[Job]] = (
        select(Job)
        .where(
            Job.current_stage.in_(list(PICKUP_STAGES)),
            Job.retry_count < max_retries,
            Job.lease_token.is_(None),
        )
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars())


async def _update_edit(
    session: AsyncSession, edit_id: UUID, values: dict[str, Any]
) -> None:
    if not values:
        return
    stmt = update(Edit).where(Edit.id == edit_id)
    if "status" in values:
        # Edit status only moves forward.
        stmt = stmt.where(
            Edit.status.notin_([EditStatus.completed, EditStatus.failed])
        )
    await session.execute(
        stmt.values(**values, updated_at=utcnow()).execution_options(
            synchronize_session=False
        )
    )


async def claim_job(
    *,
    session: AsyncSession,
    job_id: UUID,
    expected_stage: JobStage,
    working_stage: JobStage,
    lease_seconds: int,
    max_retries: int,
    now: datetime | None = None,
) -> Job | None:
    """Atomically take ownership of a job.

    Matches on id, the stage the caller observed, an empty lease and a retry
    count below the ceiling, so exactly one concurrent caller wins. Returns the
    claimed job, or ``None`` when another worker got there first.
    """
    now = now or utcnow()
    token = secrets.token_hex(16)
    result = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.current_stage == expected_stage,
            Job.lease_token.is_(None),
            Job.retry_count < max_retries,
        )
        .values(
            current_stage=working_stage,
            lease_token=token,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None

    job = await session.get(Job, job_id, populate_existing=True)
    if job is None:  # pragma: no cover - deleted under us
        await session.rollback()
        return None
    await session.execute(
        update(Edit)
        .where(Edit.id == job.edit_id, Edit.status == EditStatus.pending)
        .values(status=EditStatus.processing, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return job


async def advance_job(
    *,
    session: AsyncSession,
    job: Job,
    lease_token: str,
    next_stage: JobStage,
    payload: StagePayload,
    edit_updates: dict[str, Any],
    keep_lease: bool = False,
    lease_seconds: int | None = None,
) -> Job:
    """Persist a successful stage: new stage, payload and Edit mirror together.

    With ``keep_lease`` the lease stays with the caller and, when
    ``lease_seconds`` is given, runs for that long again from now.
    """
    now = utcnow()
    job_id = job.id
    values: dict[str, Any] = {
        "current_stage": next_stage,
        "stage_payload": payload.to_json(),
        "updated_at": now,
    }
    if not keep_lease or next_stage in TERMINAL_STAGES:
        values.update(lease_token=None, lease_expires_at=None)
    elif lease_seconds is not None:
        values["lease_expires_at"] = now + timedelta(seconds=lease_seconds)

    result = await session.execute(
        update(Job)
        .where(Job.id == job.id, Job.lease_token == lease_token)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise LeaseLostError(job_id)

    await _update_edit(session, job.edit_id, edit_updates)
    await session.commit()
    await session.refresh(job)
    return job


async def release_lease(
    *, session: AsyncSession, job_id: UUID, lease_token: str, stage: JobStage
) -> bool:
    """Hand a claimed job back untouched so the next batch can pick it up.

    The job returns to the claimable form of ``stage`` and keeps its retry
    count. Returns ``False`` when the lease is no longer ours.
    """
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.lease_token == lease_token)
        .values(
            current_stage=RETRY_STAGES.get(stage, stage),
            lease_token=None,
            lease_expires_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def record_job_failure(
    *,
    session: AsyncSession,
    job: Job,
    lease_token: str,
    error_message: str,
    max_retries: int,
) -> Job:
    """Count a stage failure against the job and release its lease.

    Below the ceiling the job returns to the claimable form of the stage it
    failed in; at the ceiling it becomes ``failed`` and the Edit follows.
    """
    now = utcnow()
    job_id = job.id
    new_count, next_stage = next_stage_after_failure(
        job.current_stage, job.retry_count, max_retries
    )
    result = await session.execute(
        update(Job)
        .where(Job.id == job.id, Job.lease_token == lease_token)
        .values(
            current_stage=next_stage,
            retry_count=new_count,
            last_error=error_message,
            lease_token=None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise LeaseLostError(job_id)

    if next_stage == JobStage.failed:
        await _update_edit(
            session,
            job.edit_id,
            {"status": EditStatus.failed, "error_message": error_message},
        )
    await session.commit()
    await session.refresh(job)
    return job


async def recover_expired_leases(
    *, session: AsyncSession, max_retries: int, now: datetime | None = None
) -> list[RecoveredLease]:
    """Release leases whose holder never came back.

    A lapsed lease means the worker died mid-stage, so it counts as a failure
    of that stage.
    """
    now = now or utcnow()
    result = await session.execute(
        select(Job.id)
        .where(
            Job.lease_token.is_not(None),
            Job.lease_expires_at < now,
            Job.current_stage.notin_(list(TERMINAL_STAGES)),
        )
        .order_by(Job.created_at.asc())
    )
    expired_ids = list(result.scalars())

    recovered: list[RecoveredLease] = []
    for job_id in expired_ids:
        still_expired = await session.execute(
            select(Job)
            .where(
                Job.id == job_id,
                Job.lease_token.is_not(None),
                Job.lease_expires_at < now,
            )
            .execution_options(populate_existing=True)
        )
        job = still_expired.scalars().first()
        if job is None:
            continue
        stage = job.current_stage
        try:
            job = await record_job_failure(
                session=session,
                job=job,
                lease_token=job.lease_token or "",
                error_message=f"lease expired during {stage.value}",
                max_retries=max_retries,
            )
        except LeaseLostError:
            # Another worker recovered it first.
            continue
        recovered.append(
            RecoveredLease(
                job_id=job_id,
                expired_stage=stage,
                stage=job.current_stage,
                retry_count=job.retry_count,
            )
        )
    return recovered


async def get_metrics(*, session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(Job.current_stage, func.count(Job.id)).group_by(Job.current_stage)
    )
    counts: dict[str, int] = {stage.value: 0 for stage in JobStage}
    for stage, count in result.all():
        counts[stage.value] = int(count)
    counts["total"] = sum(counts.values())
    return counts
