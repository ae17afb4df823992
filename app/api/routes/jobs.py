from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id, get_db_session
from app.schemas.job import JobStatusRead
from app.services.status import JobNotFoundError, get_job_status

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}/status", response_model=JobStatusRead)
async def read_job_status(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> JobStatusRead:
    try:
        job_status = await get_job_status(
            session=session, job_id=job_id, user_id=user_id
        )
    except JobNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Job not found"
        ) from exc
    return JobStatusRead(
        status=job_status.stage,
        stage_payload=job_status.payload,
        retry_count=job_status.retry_count,
        last_error=job_status.last_error,
        updated_at=job_status.updated_at,
    )
