"""
config/redis_client.py
Async Redis client used for request rate limiting.
The client is optional: when Redis is unreachable the API keeps serving.
"""

import logging
from typing import Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool. Leaves the client unset on failure."""
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable, rate limiting disabled: {e}")
        await client.aclose()
        return
    redis_client = client


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> Optional[aioredis.Redis]:
    return redis_client


# ── Rate Limiting ─────────────────────────────────────────────
class RateLimiter:
    """Fixed-window counter keyed by client identity."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def allow(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Returns True if the request is allowed, False if rate limited.
        Redis errors fail open.
        """
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window_seconds)
            results = await pipe.execute()
        except RedisError as e:
            logger.warning(f"Rate limit check failed for {key}: {e}")
            return True
        return results[0] <= limit
