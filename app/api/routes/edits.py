from fastapi import APIRouter, Depends, status
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_current_user_id,
    get_db_session,
    get_redis_client,
    get_settings_dep,
)
from app.core.config import Settings
from app.core.logging import get_logger
from app.schemas.edit import EditCreate, EditSubmitted
from app.services.jobs import create_edit_job, enqueue_job

logger = get_logger("editforge.api.edits")

router = APIRouter(prefix="/edits", tags=["edits"])


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=EditSubmitted)
async def submit_edit(
    payload: EditCreate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis_client),
    settings: Settings = Depends(get_settings_dep),
) -> EditSubmitted:
    edit, job = await create_edit_job(
        session=session,
        user_id=user_id,
        original_image_url=payload.original_image_url,
        original_image_filename=payload.original_image_filename,
        user_prompt=payload.user_prompt,
    )
    try:
        await enqueue_job(redis, settings.queue_name, job.id)
    except RedisError:
        # The scheduled batch still picks the job up.
        logger.warning("edits.nudge_failed", job_id=str(job.id))

    logger.info("edits.submitted", edit_id=str(edit.id), job_id=str(job.id))
    return EditSubmitted(edit_id=edit.id, job_id=job.id)
