"""Redis connection pool shared by the response cache"""

import redis.asyncio as redis

from airouter.config import settings
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

# Global Redis connection pool
_redis_pool: redis.ConnectionPool | None = None


def get_redis_pool() -> redis.ConnectionPool:
    """Get or create Redis connection pool (singleton)"""
    global _redis_pool

    if _redis_pool is None:
        _redis_pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True,
        )
        logger.debug(f"Created Redis pool (max {settings.redis_max_connections} connections)")

    return _redis_pool


def get_redis_client() -> redis.Redis:
    """Get Redis client from pool"""
    return redis.Redis(connection_pool=get_redis_pool())


async def close_redis_pool() -> None:
    """Close Redis connection pool (call on shutdown)"""
    global _redis_pool

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
