import secrets
from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.capabilities import Capabilities
from app.core.config import Settings, get_settings
from app.db.session import SessionLocal, get_session


async def get_settings_dep() -> Settings:
    return get_settings()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionLocal


async def get_redis_client(request: Request) -> Redis:
    redis: Redis = request.app.state.redis
    return redis


async def get_capabilities(request: Request) -> Capabilities:
    capabilities: Capabilities | None = getattr(request.app.state, "capabilities", None)
    if capabilities is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Capabilities are not configured",
        )
    return capabilities


async def get_current_user_id(
    x_user_id: str | None = Header(default=None),
) -> str:
    # Identity is established upstream; the gateway forwards the user id.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    return x_user_id


async def require_cron_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    expected = settings.cron_secret
    if (
        expected is None
        or not authorization
        or not secrets.compare_digest(
            authorization.encode(), f"Bearer {expected.get_secret_value()}".encode()
        )
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
