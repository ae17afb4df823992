from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import engine as default_engine
from app.models import Edit, Job  # noqa: F401  Ensures models are registered
from app.models.base import Base


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the edits and job tables if they do not exist yet."""
    async with (engine or default_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
