from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from io import BytesIO
from typing import Any
from uuid import UUID

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.capabilities.base import Capabilities, FetchedImage, FetchError, Translation
from app.core.config import Settings
from app.db.init_db import init_db
from app.models import Edit, Job, JobStage
from app.services.jobs import create_edit_job

ARABIC_PROMPT = "اجعلها أكثر إشراقاً"


def image_bytes(fmt: str = "PNG", color: tuple[int, int, int] = (200, 120, 40)) -> bytes:
    out = BytesIO()
    Image.new("RGB", (8, 8), color=color).save(out, format=fmt)
    return out.getvalue()


class FakeServices:
    """In-memory stand-in for every external capability."""

    def __init__(self) -> None:
        self.image = FetchedImage(data=image_bytes(), mime_type="image/png")
        self.description = "a bright photo of a cat"
        self.translation = Translation(language="en", translated_text=None)
        self.edited = image_bytes(color=(255, 255, 255))
        self.errors: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[], Awaitable[None]]] = {}
        self.bad_urls: set[str] = set()
        self.calls: list[str] = []
        self.uploads: list[tuple[bytes, str, str]] = []

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        hook = self.hooks.get(name)
        if hook is not None:
            await hook()
        if name in self.errors:
            raise self.errors[name]

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def fetch_image(self, url: str) -> FetchedImage:
        await self._call("fetch_image")
        if url in self.bad_urls:
            raise FetchError(f"Failed to fetch image: status=404 url={url}")
        return self.image

    async def describe_image(self, image_bytes: bytes, mime_type: str) -> str:
        await self._call("describe_image")
        return self.description

    async def detect_language_and_translate(self, text: str) -> Translation:
        await self._call("detect_language_and_translate")
        return self.translation

    async def edit_image(
        self, image_bytes: bytes, mime_type: str, description: str, instructions: str
    ) -> bytes:
        await self._call("edit_image")
        return self.edited

    async def upload_blob(self, data: bytes, mime_type: str, destination_hint: str) -> str:
        await self._call("upload_blob")
        self.uploads.append((data, mime_type, destination_hint))
        return f"https://cdn.test/{destination_hint}"

    def capabilities(self) -> Capabilities:
        return Capabilities(
            fetcher=self, describer=self, translator=self, editor=self, storage=self
        )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'editforge.db'}",
        cron_secret="s3cret",
        storage_path=tmp_path / "media",
        max_retries=3,
        worker_batch_size=5,
        lease_seconds=600,
        capability_timeout_seconds=5.0,
    )


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def fakes() -> FakeServices:
    return FakeServices()


@pytest.fixture
def capabilities(fakes) -> Capabilities:
    return fakes.capabilities()


@pytest.fixture
def make_job(session_factory):
    async def _make(
        *,
        stage: JobStage = JobStage.pending_describe,
        payload: dict[str, Any] | None = None,
        retry_count: int = 0,
        user_id: str = "user-1",
        original_image_url: str = "u1",
        original_image_filename: str = "f1",
        created_at: datetime | None = None,
    ) -> UUID:
        async with session_factory() as session:
            _, job = await create_edit_job(
                session=session,
                user_id=user_id,
                original_image_url=original_image_url,
                original_image_filename=original_image_filename,
                user_prompt=ARABIC_PROMPT,
            )
            job.current_stage = stage
            job.retry_count = retry_count
            if payload is not None:
                job.stage_payload = payload
            if created_at is not None:
                job.created_at = created_at
            await session.commit()
            return job.id

    return _make


@pytest.fixture
def load(session_factory):
    async def _load(job_id: UUID) -> tuple[Job, Edit]:
        async with session_factory() as session:
            job = await session.get(Job, job_id)
            assert job is not None
            edit = await session.get(Edit, job.edit_id)
            assert edit is not None
            return job, edit

    return _load
