"""Tests for the completion release endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.db.models.bounty import Bounty
from app.main import create_app
from app.services.account_service import SqlAccountService
from app.services.ledger_service import SqlLedgerService

pytestmark = pytest.mark.integration

URL = "/api/completion-release"


@pytest.fixture
async def client(engine):
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
async def escrowed_bounty(session_factory):
    """A 10000-cent bounty held in escrow, with an onboarded hunter."""
    async with session_factory() as session:
        session.add(Bounty(id="b1", creator_id="poster", hunter_id="hunter", amount_cents=10000))
        await session.commit()

    ledger = SqlLedgerService(session_factory)
    await ledger.create_deposit("poster", 10000, "pi_b1")
    await ledger.create_escrow("b1", "poster", 10000)
    await SqlAccountService(session_factory).update_connect_status("hunter", "acct_h", onboarded=True)
    return "b1"


async def test_release_returns_amounts(client, escrowed_bounty):
    response = await client.post(URL, json={"bounty_id": escrowed_bounty, "hunter_id": "hunter"})

    assert response.status_code == 200
    data = response.json()
    assert data["release_amount_cents"] == 9500
    assert data["platform_fee_cents"] == 500
    assert data["transaction_id"]


async def test_repeated_idempotency_key_returns_409(client, escrowed_bounty):
    body = {"bounty_id": escrowed_bounty, "hunter_id": "hunter", "idempotency_key": "release-b1"}

    first = await client.post(URL, json=body)
    second = await client.post(URL, json=body)

    assert first.status_code == 200
    assert second.status_code == 409


async def test_failed_release_frees_idempotency_key(client, escrowed_bounty):
    body = {"bounty_id": escrowed_bounty, "hunter_id": "intruder", "idempotency_key": "release-b1"}

    rejected = await client.post(URL, json=body)
    assert rejected.status_code == 422

    retried = await client.post(URL, json={**body, "hunter_id": "hunter"})
    assert retried.status_code == 200


async def test_second_release_without_key_returns_422(client, escrowed_bounty):
    await client.post(URL, json={"bounty_id": escrowed_bounty, "hunter_id": "hunter"})
    response = await client.post(URL, json={"bounty_id": escrowed_bounty, "hunter_id": "hunter"})

    assert response.status_code == 422
    assert "already released" in response.json()["detail"]


async def test_unknown_bounty_returns_422(client):
    response = await client.post(URL, json={"bounty_id": "missing", "hunter_id": "hunter"})

    assert response.status_code == 422


async def test_fee_percentage_out_of_range_is_rejected(client, escrowed_bounty):
    response = await client.post(
        URL, json={"bounty_id": escrowed_bounty, "hunter_id": "hunter", "platform_fee_percentage": 150}
    )

    assert response.status_code == 422


async def test_status_reflects_release(client, escrowed_bounty):
    before = await client.get(f"{URL}/{escrowed_bounty}/status")
    assert before.status_code == 200
    assert before.json() == {"bounty_id": "b1", "released": False, "transaction": None}

    released = await client.post(URL, json={"bounty_id": escrowed_bounty, "hunter_id": "hunter"})
    after = (await client.get(f"{URL}/{escrowed_bounty}/status")).json()

    assert after["released"] is True
    assert after["transaction"]["id"] == released.json()["transaction_id"]
    assert after["transaction"]["amount_cents"] == 9500


async def test_status_for_unknown_bounty_returns_404(client):
    response = await client.get(f"{URL}/missing/status")

    assert response.status_code == 404
