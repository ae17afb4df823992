from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.job import JobStage


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatusRead(_CamelModel):
    status: JobStage
    stage_payload: dict[str, Any]
    retry_count: int
    last_error: str | None
    updated_at: datetime


class WorkerJobResult(_CamelModel):
    job_id: UUID
    status: str
    error: str | None = None


class WorkerRunResponse(_CamelModel):
    message: str
    processed: int
    results: list[WorkerJobResult]


class JobStageMetrics(BaseModel):
    total: int
    stages: dict[str, int]
