"""Tests for idempotency guards (database and Redis backends)."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import update

from app.core.exceptions import ConfigurationError, DuplicateRequestError
from app.db.models.idempotency_key import IdempotencyKey
from app.services.idempotency_service import (
    RedisIdempotencyGuard,
    SqlIdempotencyGuard,
    get_idempotency_guard,
    idempotent,
)

pytestmark = pytest.mark.unit


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def sql_guard(session_factory):
    return SqlIdempotencyGuard(session_factory, ttl_seconds=3600)


@pytest.fixture
def redis_guard(redis):
    return RedisIdempotencyGuard(redis, ttl_seconds=60)


@pytest.fixture(params=["sql", "redis"])
def guard(request, sql_guard, redis_guard):
    return sql_guard if request.param == "sql" else redis_guard


async def test_second_begin_is_duplicate(guard):
    await guard.begin("k1")

    with pytest.raises(DuplicateRequestError) as exc_info:
        await guard.begin("k1")
    assert exc_info.value.key == "k1"


async def test_commit_keeps_key(guard):
    await guard.begin("k1")
    await guard.commit("k1")

    with pytest.raises(DuplicateRequestError):
        await guard.begin("k1")


async def test_release_frees_key(guard):
    await guard.begin("k1")
    await guard.release("k1")

    await guard.begin("k1")


async def test_idempotent_block_releases_on_failure(guard):
    with pytest.raises(RuntimeError):
        async with idempotent(guard, "k1"):
            raise RuntimeError("boom")

    async with idempotent(guard, "k1"):
        pass

    with pytest.raises(DuplicateRequestError):
        async with idempotent(guard, "k1"):
            pass


async def test_idempotent_without_key_runs_unguarded(guard):
    calls = []
    for _ in range(2):
        async with idempotent(guard, None):
            calls.append(1)
    assert len(calls) == 2


async def test_redis_key_expires_after_ttl(redis, redis_guard):
    await redis_guard.begin("k1")

    ttl = await redis.ttl(f"{RedisIdempotencyGuard.KEY_PREFIX}k1")
    assert 0 < ttl <= 60


async def test_sql_expired_key_no_longer_blocks(sql_guard, session_factory):
    await sql_guard.begin("k1")
    async with session_factory() as session:
        await session.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.key == "k1")
            .values(created_at=datetime.now(UTC) - timedelta(hours=2))
        )
        await session.commit()

    await sql_guard.begin("k1")


def test_unknown_backend_is_configuration_error():
    mock_settings = MagicMock()
    mock_settings.idempotency_backend = "memcached"

    with patch("app.services.idempotency_service.get_settings", return_value=mock_settings):
        with pytest.raises(ConfigurationError):
            get_idempotency_guard()


async def test_database_backend_is_selected(engine):
    mock_settings = MagicMock()
    mock_settings.idempotency_backend = "database"
    mock_settings.idempotency_ttl_seconds = 86400

    with patch("app.services.idempotency_service.get_settings", return_value=mock_settings):
        assert isinstance(get_idempotency_guard(), SqlIdempotencyGuard)
