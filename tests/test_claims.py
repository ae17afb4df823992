from datetime import timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from app.models import EditStatus, Job, JobStage
from app.models.base import utcnow
from app.schemas.payload import StagePayload
from app.services import worker
from app.services.jobs import LeaseLostError, advance_job, claim_job
from app.services.worker import JobOutcome, run_batch


async def _claim(session_factory, job_id, *, now=None, lease_seconds=600):
    async with session_factory() as session:
        return await claim_job(
            session=session,
            job_id=job_id,
            expected_stage=JobStage.pending_describe,
            working_stage=JobStage.describing_image,
            lease_seconds=lease_seconds,
            max_retries=3,
            now=now,
        )


async def test_only_one_claim_wins(session_factory, make_job, load):
    job_id = await make_job()

    first = await _claim(session_factory, job_id)
    second = await _claim(session_factory, job_id)

    assert first is not None
    assert first.lease_token
    assert second is None
    job, edit = await load(job_id)
    assert job.current_stage == JobStage.describing_image
    assert job.lease_token == first.lease_token
    assert edit.status == EditStatus.processing


async def test_overlapping_batch_skips_a_claimed_job(
    session_factory, fakes, capabilities, settings, make_job, load
):
    job_id = await make_job()
    nested: list = []

    async def overlapping_run() -> None:
        nested.append(
            await run_batch(
                session_factory=session_factory,
                capabilities=capabilities,
                settings=settings,
            )
        )

    fakes.hooks["describe_image"] = overlapping_run

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert nested == [[]]
    assert [r.outcome for r in results] == [JobOutcome.stage_advanced]
    assert fakes.count("describe_image") == 1
    job, _ = await load(job_id)
    assert job.current_stage == JobStage.pending_translate


async def test_writes_need_the_current_lease(session_factory, make_job):
    job_id = await make_job()
    claimed = await _claim(session_factory, job_id)

    async with session_factory() as session:
        job = await session.get(Job, job_id)
        with pytest.raises(LeaseLostError):
            await advance_job(
                session=session,
                job=job,
                lease_token="someone-else",
                next_stage=JobStage.pending_translate,
                payload=StagePayload.from_json(job.stage_payload),
                edit_updates={},
            )
        await session.refresh(job)
        assert job.current_stage == JobStage.describing_image
        assert job.lease_token == claimed.lease_token


async def test_stolen_lease_reports_error_and_keeps_new_owner(
    session_factory, fakes, capabilities, settings, make_job, load
):
    job_id = await make_job()

    async def steal() -> None:
        async with session_factory() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(lease_token="thief")
            )
            await session.commit()

    fakes.hooks["describe_image"] = steal

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert results[0].outcome == JobOutcome.error
    job, edit = await load(job_id)
    assert job.lease_token == "thief"
    assert job.current_stage == JobStage.describing_image
    assert "aiImageDescription" not in job.stage_payload
    assert edit.image_description_ai is None


async def test_expired_lease_counts_as_failure_and_job_resumes(
    session_factory, capabilities, settings, make_job, load
):
    job_id = await make_job()
    await _claim(
        session_factory, job_id, now=utcnow() - timedelta(hours=2), lease_seconds=60
    )

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert [r.outcome for r in results] == [JobOutcome.stage_advanced]
    job, _ = await load(job_id)
    assert job.current_stage == JobStage.pending_translate
    assert job.retry_count == 1
    assert job.last_error == "lease expired during describing_image"


async def test_expired_lease_at_ceiling_fails_the_job(
    session_factory, fakes, capabilities, settings, make_job, load
):
    job_id = await make_job(retry_count=2)
    await _claim(
        session_factory, job_id, now=utcnow() - timedelta(hours=2), lease_seconds=60
    )

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert results == []
    assert fakes.calls == []
    job, edit = await load(job_id)
    assert job.current_stage == JobStage.failed
    assert job.retry_count == 3
    assert job.lease_token is None
    assert edit.status == EditStatus.failed
    assert edit.error_message == "lease expired during describing_image"


async def test_live_lease_is_left_alone(
    session_factory, fakes, capabilities, settings, make_job, load
):
    job_id = await make_job()
    claimed = await _claim(session_factory, job_id)

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert results == []
    job, _ = await load(job_id)
    assert job.lease_token == claimed.lease_token
    assert job.retry_count == 0


def _locked() -> OperationalError:
    return OperationalError("UPDATE image_processing_jobs", {}, Exception("locked"))


async def test_persist_error_hands_job_back_without_a_retry(
    session_factory, capabilities, settings, make_job, load, monkeypatch
):
    job_id = await make_job()
    attempts: list[JobStage] = []

    async def flaky_advance(**kwargs):
        attempts.append(kwargs["next_stage"])
        if len(attempts) == 1:
            raise _locked()
        return await advance_job(**kwargs)

    monkeypatch.setattr(worker, "advance_job", flaky_advance)

    first = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )
    assert [r.outcome for r in first] == [JobOutcome.error]
    job, _ = await load(job_id)
    assert job.current_stage == JobStage.pending_describe
    assert job.lease_token is None
    assert job.retry_count == 0
    assert job.last_error is None

    second = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )
    assert [r.outcome for r in second] == [JobOutcome.stage_advanced]
    job, _ = await load(job_id)
    assert job.current_stage == JobStage.pending_translate
    assert job.retry_count == 0


async def test_failed_release_leaves_job_to_lease_expiry(
    session_factory, capabilities, settings, make_job, load, monkeypatch
):
    job_id = await make_job()

    async def broken(**kwargs):
        raise _locked()

    monkeypatch.setattr(worker, "advance_job", broken)
    monkeypatch.setattr(worker, "release_lease", broken)

    results = await run_batch(
        session_factory=session_factory, capabilities=capabilities, settings=settings
    )

    assert [r.outcome for r in results] == [JobOutcome.error]
    job, _ = await load(job_id)
    assert job.current_stage == JobStage.describing_image
    assert job.lease_token is not None
    assert job.retry_count == 0


async def test_chained_stage_renews_the_lease(session_factory, make_job):
    job_id = await make_job(stage=JobStage.pending_edit)
    async with session_factory() as session:
        job = await claim_job(
            session=session,
            job_id=job_id,
            expected_stage=JobStage.pending_edit,
            working_stage=JobStage.editing_image,
            lease_seconds=600,
            max_retries=3,
            now=utcnow() - timedelta(seconds=590),
        )
        token = job.lease_token

        job = await advance_job(
            session=session,
            job=job,
            lease_token=token,
            next_stage=JobStage.uploading_result,
            payload=StagePayload.from_json(job.stage_payload),
            edit_updates={},
            keep_lease=True,
            lease_seconds=600,
        )

    assert job.lease_token == token
    expires = job.lease_expires_at.replace(tzinfo=timezone.utc)
    assert expires > utcnow() + timedelta(seconds=300)
