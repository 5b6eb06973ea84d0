"""Redis async connection pool."""

from typing import Optional

import redis.asyncio as aioredis

from rideledger.config import settings

_pool: Optional[aioredis.ConnectionPool] = (
    aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)
    if settings.redis_url
    else None
)


async def get_redis() -> Optional[aioredis.Redis]:
    """Return a Redis client backed by the shared pool, or None if unconfigured."""
    if _pool is None:
        return None
    return aioredis.Redis(connection_pool=_pool)
