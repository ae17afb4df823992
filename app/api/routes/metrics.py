from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session
from app.schemas.job import JobStageMetrics
from app.services.jobs import get_metrics

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", response_model=JobStageMetrics)
async def read_metrics(
    session: AsyncSession = Depends(get_db_session),
) -> JobStageMetrics:
    metrics = await get_metrics(session=session)
    total = metrics.pop("total", 0)
    return JobStageMetrics(total=total, stages=metrics)
