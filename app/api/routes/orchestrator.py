from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import (
    get_capabilities,
    get_session_factory,
    get_settings_dep,
    require_cron_secret,
)
from app.capabilities import Capabilities
from app.core.config import Settings
from app.core.logging import get_logger
from app.schemas.job import WorkerJobResult, WorkerRunResponse
from app.services.worker import run_batch

logger = get_logger("editforge.api.orchestrator")

router = APIRouter(prefix="/orchestrator", tags=["orchestrator"])


@router.post(
    "/worker",
    response_model=WorkerRunResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_cron_secret)],
)
async def trigger_worker(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    capabilities: Capabilities = Depends(get_capabilities),
    settings: Settings = Depends(get_settings_dep),
) -> WorkerRunResponse:
    try:
        results = await run_batch(
            session_factory=session_factory,
            capabilities=capabilities,
            settings=settings,
        )
    except SQLAlchemyError as exc:
        logger.exception("orchestrator.batch_unavailable")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process jobs",
        ) from exc

    logger.info("orchestrator.batch_processed", processed=len(results))
    return WorkerRunResponse(
        message="Jobs processed" if results else "No pending jobs found",
        processed=len(results),
        results=[
            WorkerJobResult(
                job_id=item.job_id, status=item.outcome.value, error=item.error
            )
            for item in results
        ],
    )
