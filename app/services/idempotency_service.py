"""Idempotency guard for client-triggered mutations.

A key is taken with ``begin`` before the mutation runs. On success the key
stays behind as the completion marker (``commit`` is a no-op), so a replay of
the same request is refused. On failure ``release`` removes it so the client
can retry with the same key.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

import redis.asyncio as redis
import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.exceptions import ConfigurationError, DuplicateRequestError
from app.db.base import get_session_factory
from app.db.models.idempotency_key import IdempotencyKey
from app.db.redis import get_redis

logger = structlog.get_logger(__name__)


@runtime_checkable
class IdempotencyGuard(Protocol):
    async def begin(self, key: str) -> None: ...

    async def commit(self, key: str) -> None: ...

    async def release(self, key: str) -> None: ...


class SqlIdempotencyGuard:
    """Guard backed by the ``idempotency_keys`` table (primary key insert)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ttl_seconds: int = 86400):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    async def begin(self, key: str) -> None:
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            # Expired keys no longer block
            await session.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.key == key,
                    IdempotencyKey.created_at < now - timedelta(seconds=self.ttl_seconds),
                )
            )
            session.add(IdempotencyKey(key=key, created_at=now))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.info("idempotency_key_duplicate", key=key)
                raise DuplicateRequestError(key) from exc

    async def commit(self, key: str) -> None:
        pass

    async def release(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key))
            await session.commit()


class RedisIdempotencyGuard:
    """Guard backed by Redis ``SET NX EX``; keys expire after ``ttl_seconds``."""

    KEY_PREFIX = "bounty:idempotency:"

    def __init__(self, client: redis.Redis, ttl_seconds: int = 86400, prefix: str = KEY_PREFIX):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def begin(self, key: str) -> None:
        taken = await self.client.set(self._key(key), datetime.now(UTC).isoformat(), nx=True, ex=self.ttl_seconds)
        if not taken:
            logger.info("idempotency_key_duplicate", key=key)
            raise DuplicateRequestError(key)

    async def commit(self, key: str) -> None:
        pass

    async def release(self, key: str) -> None:
        await self.client.delete(self._key(key))


@asynccontextmanager
async def idempotent(guard: IdempotencyGuard, key: str | None) -> AsyncIterator[None]:
    """Run the block under ``key``; a missing key runs it unguarded."""
    if not key:
        yield
        return

    await guard.begin(key)
    try:
        yield
    except BaseException:
        await guard.release(key)
        raise
    await guard.commit(key)


def get_idempotency_guard() -> IdempotencyGuard:
    """FastAPI dependency: the guard selected by ``idempotency_backend``."""
    settings = get_settings()
    if settings.idempotency_backend == "redis":
        return RedisIdempotencyGuard(get_redis(), ttl_seconds=settings.idempotency_ttl_seconds)
    if settings.idempotency_backend == "database":
        return SqlIdempotencyGuard(get_session_factory(), ttl_seconds=settings.idempotency_ttl_seconds)
    raise ConfigurationError(f"Unknown idempotency backend '{settings.idempotency_backend}'")
