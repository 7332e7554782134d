"""Shared Redis connection pool (deadline queue, rate limiting)."""

from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from jobescrow.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


def redis_client() -> aioredis.Redis:
    """Client bound to the shared pool. Caller is responsible for aclose()."""
    return aioredis.Redis(connection_pool=redis_pool)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = redis_client()
    try:
        yield client
    finally:
        await client.aclose()


async def close_redis_pool() -> None:
    await redis_pool.aclose()
