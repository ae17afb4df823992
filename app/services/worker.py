from __future__ import annotations

import enum
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.capabilities.base import Capabilities
from app.core.config import Settings
from app.core.logging import get_logger
from app.models.job import Job, JobStage
from app.schemas.payload import StagePayload
from app.services.jobs import (
    LeaseLostError,
    advance_job,
    claim_job,
    list_eligible_jobs,
    record_job_failure,
    recover_expired_leases,
    release_lease,
)
from app.services.pipeline import execute_stage, transition_for

logger = get_logger("editforge.worker")


class JobOutcome(str, enum.Enum):
    stage_advanced = "stage_advanced"
    completed = "completed"
    failed = "failed"
    error = "error"


@dataclass(frozen=True)
class BatchItemResult:
    job_id: UUID
    outcome: JobOutcome
    error: str | None = None


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


async def _record_failure(
    session: AsyncSession,
    job: Job,
    lease_token: str,
    exc: Exception,
    settings: Settings,
) -> BatchItemResult:
    message = _error_text(exc)
    job_id = job.id
    try:
        job = await record_job_failure(
            session=session,
            job=job,
            lease_token=lease_token,
            error_message=message,
            max_retries=settings.max_retries,
        )
    except (SQLAlchemyError, LeaseLostError) as persist_exc:
        await session.rollback()
        logger.exception(
            "worker.failure_not_recorded",
            job_id=str(job_id),
            error=message,
            persist_error=_error_text(persist_exc),
        )
        return BatchItemResult(job_id, JobOutcome.error, message)

    if job.current_stage == JobStage.failed:
        logger.warning(
            "worker.job_failed",
            job_id=str(job.id),
            retry_count=job.retry_count,
            error=message,
        )
        return BatchItemResult(job.id, JobOutcome.failed, message)

    logger.warning(
        "worker.stage_failed",
        job_id=str(job.id),
        stage=job.current_stage.value,
        retry_count=job.retry_count,
        error=message,
    )
    return BatchItemResult(job.id, JobOutcome.error, message)


async def _release_after_persist_error(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: UUID,
    lease_token: str,
    stage: JobStage,
) -> None:
    # Expiry recovery takes over if this write fails too.
    try:
        async with session_factory() as session:
            released = await release_lease(
                session=session, job_id=job_id, lease_token=lease_token, stage=stage
            )
    except SQLAlchemyError:
        logger.exception("worker.release_failed", job_id=str(job_id))
        return
    if released:
        logger.info("worker.lease_released", job_id=str(job_id), stage=stage.value)


async def process_job(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    job_id: UUID,
    stage: JobStage,
    capabilities: Capabilities,
    settings: Settings,
) -> BatchItemResult | None:
    """Claim one job and run its current stage.

    Returns ``None`` when the claim is lost to another worker.
    """
    transition = transition_for(stage)
    async with session_factory() as session:
        try:
            job = await claim_job(
                session=session,
                job_id=job_id,
                expected_stage=stage,
                working_stage=transition.working_stage,
                lease_seconds=settings.lease_seconds,
                max_retries=settings.max_retries,
            )
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception("worker.claim_failed", job_id=str(job_id))
            return BatchItemResult(job_id, JobOutcome.error, _error_text(exc))

        if job is None:
            logger.info("worker.job_skipped", job_id=str(job_id), stage=stage.value)
            return None

        lease_token = job.lease_token or ""
        payload = StagePayload.from_json(job.stage_payload)
        logger.info(
            "worker.job_claimed", job_id=str(job_id), stage=job.current_stage.value
        )

        while True:
            try:
                result = await execute_stage(
                    transition,
                    user_id=job.user_id,
                    payload=payload,
                    capabilities=capabilities,
                    timeout=settings.capability_timeout_seconds,
                )
            except Exception as exc:
                return await _record_failure(session, job, lease_token, exc, settings)

            try:
                job = await advance_job(
                    session=session,
                    job=job,
                    lease_token=lease_token,
                    next_stage=transition.next_stage,
                    payload=result.payload,
                    edit_updates=result.edit_updates,
                    keep_lease=transition.chain,
                    lease_seconds=settings.lease_seconds,
                )
            except LeaseLostError as exc:
                logger.warning("worker.lease_lost", job_id=str(job_id))
                return BatchItemResult(job_id, JobOutcome.error, _error_text(exc))
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("worker.persist_failed", job_id=str(job_id))
                await _release_after_persist_error(
                    session_factory, job_id, lease_token, transition.working_stage
                )
                return BatchItemResult(job_id, JobOutcome.error, _error_text(exc))

            if not transition.chain:
                break
            transition = transition_for(transition.next_stage)
            payload = result.payload

    if job.current_stage == JobStage.completed:
        logger.info("worker.job_completed", job_id=str(job_id))
        return BatchItemResult(job_id, JobOutcome.completed)

    logger.info(
        "worker.stage_advanced", job_id=str(job_id), stage=job.current_stage.value
    )
    return BatchItemResult(job_id, JobOutcome.stage_advanced)


async def run_batch(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    capabilities: Capabilities,
    settings: Settings,
    max_jobs: int | None = None,
) -> list[BatchItemResult]:
    """Advance up to ``max_jobs`` eligible jobs by one stage each, oldest first.

    Errors in one job never stop the batch; they are written to the job and
    reported in the returned list. Jobs lost to a concurrent worker are left
    out. Raises only when the job store cannot be read at all.
    """
    limit = settings.worker_batch_size if max_jobs is None else max_jobs
    if limit <= 0:
        return []

    async with session_factory() as session:
        recovered = await recover_expired_leases(
            session=session, max_retries=settings.max_retries
        )
        for lease in recovered:
            logger.warning(
                "worker.lease_recovered",
                job_id=str(lease.job_id),
                expired_stage=lease.expired_stage.value,
                stage=lease.stage.value,
                retry_count=lease.retry_count,
            )
        eligible = [
            (job.id, job.current_stage)
            for job in await list_eligible_jobs(
                session=session, limit=limit, max_retries=settings.max_retries
            )
        ]

    results: list[BatchItemResult] = []
    for job_id, stage in eligible:
        result = await process_job(
            session_factory=session_factory,
            job_id=job_id,
            stage=stage,
            capabilities=capabilities,
            settings=settings,
        )
        if result is not None:
            results.append(result)

    logger.info("worker.batch_finished", selected=len(eligible), processed=len(results))
    return results
