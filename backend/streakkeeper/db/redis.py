"""Redis async client backing the on-device local cache."""

import redis.asyncio as redis

from streakkeeper.config import settings

redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Get or create the Redis client singleton (lazy init)."""
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REMOTE_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REMOTE_TIMEOUT_SECONDS,
        )
    return redis_client


async def close_redis() -> None:
    """Close the Redis connection if open."""
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
