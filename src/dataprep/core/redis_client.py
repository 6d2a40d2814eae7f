"""Redis connection used to check the Celery broker."""
from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from dataprep.core.settings import get_settings

logger = logging.getLogger(__name__)

_redis_pool: ConnectionPool | None = None


async def get_redis_client() -> redis.Redis:
    """Get a Redis client instance with connection pooling."""
    global _redis_pool

    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=10,
            socket_connect_timeout=2,
        )
        logger.info("Created Redis connection pool")

    return redis.Redis(connection_pool=_redis_pool)


async def ping_redis() -> bool:
    """Ping the broker; False when it cannot be reached."""
    try:
        client = await get_redis_client()
        return bool(await client.ping())
    except (redis.RedisError, OSError) as e:
        logger.error(f"Redis connection test failed: {e}")
        return False


async def close_redis_connection() -> None:
    global _redis_pool

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection pool closed")
