from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from esign_engine.core.config import get_settings
from esign_engine.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def get_redis_client() -> AsyncIterator[Redis | None]:
    settings = get_settings()
    client: Redis | None = None
    if not settings.redis_url:
        yield None
        return
    try:
        client = Redis.from_url(settings.redis_url)
    except ValueError as exc:
        logger.warning("redis.unavailable", error=str(exc))
    try:
        yield client
    finally:
        if client is not None:
            await client.aclose()


async def redis_dependency() -> AsyncIterator[Redis | None]:
    async with get_redis_client() as client:
        yield client
