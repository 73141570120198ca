"""Tests for the wallet endpoints: withdrawals, escrow funding and balances."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from httpx import ASGITransport, AsyncClient

from app.db.models.bounty import Bounty
from app.main import create_app
from app.services.account_service import SqlAccountService
from app.services.ledger_service import SqlLedgerService

pytestmark = pytest.mark.integration


@pytest.fixture
async def client(engine):
    mock_settings = MagicMock()
    mock_settings.stripe_secret_key = "sk_test_123"
    mock_settings.platform_fee_percentage = 5.0
    app = create_app()
    with patch("app.api.deps.get_settings", return_value=mock_settings):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client


@pytest.fixture
async def funded_hunter(session_factory):
    await SqlLedgerService(session_factory).create_deposit("hunter", 5000, "pi_seed")
    await SqlAccountService(session_factory).update_connect_status("hunter", "acct_h", onboarded=True)
    return "hunter"


async def test_withdrawal_returns_transfer(client, funded_hunter):
    with patch("stripe.Transfer.create_async", new_callable=AsyncMock, return_value=MagicMock(id="tr_1")):
        response = await client.post("/api/wallet/withdrawals", json={"user_id": funded_hunter, "amount_cents": 1500})

    assert response.status_code == 200
    assert response.json()["transfer_id"] == "tr_1"

    balance = await client.get(f"/api/wallet/{funded_hunter}/balance")
    assert balance.json() == {"user_id": funded_hunter, "balance_cents": 3500}


async def test_withdrawal_repeated_idempotency_key_returns_409(client, funded_hunter):
    body = {"user_id": funded_hunter, "amount_cents": 1000, "idempotency_key": "wd-1"}

    with patch("stripe.Transfer.create_async", new_callable=AsyncMock, return_value=MagicMock(id="tr_1")) as create:
        first = await client.post("/api/wallet/withdrawals", json=body)
        second = await client.post("/api/wallet/withdrawals", json=body)

    assert first.status_code == 200
    assert second.status_code == 409
    assert create.await_count == 1


async def test_withdrawal_rejected_by_stripe_returns_502(client, funded_hunter):
    error = stripe.InvalidRequestError("No such destination", param="destination")
    with patch("stripe.Transfer.create_async", new_callable=AsyncMock, side_effect=error):
        response = await client.post("/api/wallet/withdrawals", json={"user_id": funded_hunter, "amount_cents": 1000})

    assert response.status_code == 502
    balance = await client.get(f"/api/wallet/{funded_hunter}/balance")
    assert balance.json()["balance_cents"] == 5000


async def test_withdrawal_rejects_non_positive_amount(client, funded_hunter):
    response = await client.post("/api/wallet/withdrawals", json={"user_id": funded_hunter, "amount_cents": 0})

    assert response.status_code == 422


async def test_escrow_then_release_flow(client, session_factory):
    async with session_factory() as session:
        session.add(Bounty(id="b1", creator_id="poster", hunter_id="hunter", amount_cents=2000))
        await session.commit()
    await SqlLedgerService(session_factory).create_deposit("poster", 2000, "pi_poster")
    await SqlAccountService(session_factory).update_connect_status("hunter", "acct_h", onboarded=True)

    escrow = await client.post("/api/wallet/escrow", json={"bounty_id": "b1"})
    release = await client.post("/api/completion-release", json={"bounty_id": "b1", "hunter_id": "hunter"})

    assert escrow.status_code == 200
    assert release.status_code == 200
    assert (await client.get("/api/wallet/poster/balance")).json()["balance_cents"] == 0
    assert (await client.get("/api/wallet/hunter/balance")).json()["balance_cents"] == 1900


async def test_escrow_unknown_bounty_returns_404(client):
    response = await client.post("/api/wallet/escrow", json={"bounty_id": "missing"})

    assert response.status_code == 404
