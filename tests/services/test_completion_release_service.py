"""Tests for completion release business rules and fee computation."""

import pytest
from sqlalchemy import select

from app.core.exceptions import BusinessRuleError, NotFoundError, ValidationError
from app.db.models.bounty import Bounty
from app.services.account_service import SqlAccountService
from app.services.completion_release_service import (
    CompletionReleaseService,
    ReleaseRequest,
    compute_platform_fee,
)
from app.services.ledger_service import SqlLedgerService

pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(session_factory):
    return SqlLedgerService(session_factory)


@pytest.fixture
def accounts(session_factory):
    return SqlAccountService(session_factory)


@pytest.fixture
def service(ledger, accounts, session_factory):
    return CompletionReleaseService(ledger, accounts, session_factory, default_fee_percentage=5.0)


@pytest.fixture
def seed_bounty(session_factory, ledger, accounts):
    """Create a funded, escrowed bounty and an onboarded hunter."""

    async def _seed(
        bounty_id: str = "b1",
        amount_cents: int = 10000,
        hunter_id: str | None = "hunter",
        is_for_honor: bool = False,
        escrow: bool = True,
    ) -> None:
        async with session_factory() as session:
            session.add(
                Bounty(
                    id=bounty_id,
                    creator_id="poster",
                    hunter_id=hunter_id,
                    amount_cents=amount_cents,
                    is_for_honor=is_for_honor,
                    status="in_progress",
                )
            )
            await session.commit()
        await accounts.update_connect_status("hunter", "acct_hunter", onboarded=True)
        if escrow and amount_cents > 0:
            await ledger.create_deposit("poster", amount_cents, f"pi_{bounty_id}")
            await ledger.create_escrow(bounty_id, "poster", amount_cents)

    return _seed


@pytest.mark.parametrize(
    ("amount", "pct", "expected"),
    [
        (10000, 5, 500),
        (50, 5, 3),  # 2.5 rounds half up
        (30, 5, 2),  # 1.5 rounds half up
        (1000, 0, 0),
        (1000, 100, 1000),
        (999, 12.5, 125),  # 124.875
    ],
)
def test_compute_platform_fee(amount, pct, expected):
    assert compute_platform_fee(amount, pct) == expected


@pytest.mark.parametrize("pct", [-1, 100.5])
def test_compute_platform_fee_rejects_out_of_range(pct):
    with pytest.raises(ValidationError):
        compute_platform_fee(1000, pct)


async def test_release_pays_hunter_and_completes_bounty(service, seed_bounty, ledger, session_factory):
    await seed_bounty()

    result = await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))

    assert result.platform_fee_cents == 500
    assert result.release_amount_cents == 9500
    assert await ledger.get_balance("hunter") == 9500
    async with session_factory() as session:
        bounty = (await session.execute(select(Bounty).where(Bounty.id == "b1"))).scalar_one()
    assert bounty.status == "completed"


async def test_release_uses_requested_fee_percentage(service, seed_bounty):
    await seed_bounty()

    result = await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter", platform_fee_percentage=10))

    assert result.platform_fee_cents == 1000
    assert result.release_amount_cents == 9000


async def test_second_release_is_rejected(service, seed_bounty):
    await seed_bounty()
    await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))

    with pytest.raises(BusinessRuleError, match="already released"):
        await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))


async def test_unknown_bounty_is_rejected(service):
    with pytest.raises(BusinessRuleError):
        await service.process(ReleaseRequest(bounty_id="missing", hunter_id="hunter"))


async def test_honor_bounty_is_rejected(service, seed_bounty):
    await seed_bounty(is_for_honor=True, escrow=False)

    with pytest.raises(BusinessRuleError):
        await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))


async def test_zero_amount_bounty_is_rejected(service, seed_bounty):
    await seed_bounty(amount_cents=0)

    with pytest.raises(BusinessRuleError):
        await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))


async def test_mismatched_hunter_is_rejected(service, seed_bounty):
    await seed_bounty(hunter_id="someone_else")

    with pytest.raises(BusinessRuleError):
        await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))


async def test_hunter_without_connect_account_is_rejected(service, seed_bounty):
    await seed_bounty(hunter_id="new_hunter")

    with pytest.raises(BusinessRuleError):
        await service.process(ReleaseRequest(bounty_id="b1", hunter_id="new_hunter"))


async def test_status_before_and_after_release(service, seed_bounty):
    await seed_bounty()

    before = await service.get_status("b1")
    assert not before.released
    assert before.transaction is None

    result = await service.process(ReleaseRequest(bounty_id="b1", hunter_id="hunter"))
    after = await service.get_status("b1")
    assert after.released
    assert after.transaction.id == result.transaction_id


async def test_status_for_unknown_bounty(service):
    with pytest.raises(NotFoundError):
        await service.get_status("missing")
