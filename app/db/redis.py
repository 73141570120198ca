"""Redis client for the Redis idempotency-key backend."""

import redis.asyncio as redis
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> None:
    """Connect once per process. ``client`` installs an existing connection instead."""
    global _redis

    if _redis is not None:
        return

    if client is None:
        client = redis.from_url(url or get_settings().redis_url, encoding="utf-8", decode_responses=True)
    await client.ping()
    _redis = client


async def close_redis() -> None:
    global _redis

    client, _redis = _redis, None
    if client is not None:
        await client.aclose()


def get_redis() -> redis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def ping_redis() -> bool:
    """False when uninitialized or unreachable."""
    if _redis is None:
        return False
    try:
        return bool(await _redis.ping())
    except redis.RedisError:
        logger.error("redis_ping_failed", exc_info=True)
        return False
