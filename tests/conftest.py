"""Shared test fixtures for all test groups."""

import hashlib
import hmac
import json
import os
import time

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.base import build_engine, build_session_factory, create_tables, drop_tables, install_engine

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Test engine with all tables created.

    SQLite file database by default; set TEST_DATABASE_URL to run against
    PostgreSQL. The engine is installed as the app's shared engine so code
    using get_session_factory() sees the same database.
    """
    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    engine = build_engine(url)

    await drop_tables(engine)
    await create_tables(engine)
    install_engine(engine)

    yield engine

    await drop_tables(engine)
    install_engine(None)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_id: str, event_type: str, obj: dict) -> str:
    """Serialize a minimal Stripe-style event envelope."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    )


@pytest.fixture
def signed_event():
    """Factory returning (raw body bytes, signature header) for an event."""

    def _build(event_id: str, event_type: str, obj: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        payload = make_event(event_id, event_type, obj)
        return payload.encode(), sign_payload(payload, secret)

    return _build


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def event_body():
    return make_event
