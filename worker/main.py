from __future__ import annotations

import argparse
import asyncio

import aiohttp
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.capabilities import Capabilities, build_capabilities
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, get_logger
from app.db.session import SessionLocal, engine
from app.services.worker import run_batch

logger = get_logger("editforge.worker.process")


async def run_once(settings: Settings, capabilities: Capabilities) -> int:
    results = await run_batch(
        session_factory=SessionLocal,
        capabilities=capabilities,
        settings=settings,
    )
    for item in results:
        logger.info(
            "worker.result",
            job_id=str(item.job_id),
            outcome=item.outcome.value,
            error=item.error,
        )
    return len(results)


async def consume(settings: Settings, *, once: bool = False) -> None:
    configure_logging(settings.log_level)
    settings.storage_path.mkdir(parents=True, exist_ok=True)

    client_timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
    async with aiohttp.ClientSession(timeout=client_timeout) as http:
        capabilities = build_capabilities(settings, http)
        if once:
            try:
                await run_once(settings, capabilities)
            finally:
                await engine.dispose()
            return

        redis = Redis.from_url(settings.redis_url, decode_responses=True)
        try:
            while True:
                try:
                    # A nudge only wakes the loop early; claims keep runs safe.
                    nudge = await redis.brpop(
                        settings.queue_name, timeout=settings.worker_poll_interval
                    )
                    if nudge is not None:
                        logger.debug("worker.nudged", job_id=nudge[1])
                except RedisError as exc:
                    logger.warning("worker.nudge_unavailable", error=str(exc))
                    await asyncio.sleep(settings.worker_poll_interval)

                try:
                    await run_once(settings, capabilities)
                except asyncio.CancelledError:
                    break
                except SQLAlchemyError as exc:
                    logger.exception("worker.batch_unavailable", error=str(exc))
        except asyncio.CancelledError:
            pass
        finally:
            await redis.close()
            await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run EditForge job batches.")
    parser.add_argument(
        "--once", action="store_true", help="run a single batch and exit"
    )
    args = parser.parse_args(argv)
    asyncio.run(consume(get_settings(), once=args.once))


if __name__ == "__main__":
    main()
