from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import aiohttp
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from redis.asyncio import Redis

from app.api.routes import edits, jobs, metrics, orchestrator
from app.capabilities import build_capabilities
from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.db.init_db import init_db
from app.db.session import engine

logger = get_logger("editforge.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)

    Path(settings.storage_path).mkdir(parents=True, exist_ok=True)
    await init_db()

    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    app.state.redis = redis

    http = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
    )
    try:
        app.state.capabilities = build_capabilities(settings, http)
    except RuntimeError as exc:
        app.state.capabilities = None
        logger.warning("api.capabilities_unavailable", error=str(exc))

    try:
        yield
    finally:
        await http.close()
        await redis.close()
        await engine.dispose()


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.include_router(edits.router, prefix=settings.api_v1_prefix)
app.include_router(jobs.router, prefix=settings.api_v1_prefix)
app.include_router(orchestrator.router, prefix=settings.api_v1_prefix)
app.include_router(metrics.router, prefix=settings.api_v1_prefix)
app.mount(
    "/media",
    StaticFiles(directory=settings.storage_path, check_dir=False),
    name="media",
)


@app.get("/healthz")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
