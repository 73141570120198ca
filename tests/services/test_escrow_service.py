"""Tests for funding a bounty's escrow from its creator's balance."""

import pytest

from app.core.exceptions import BusinessRuleError, InsufficientFundsError, NotFoundError
from app.db.models.bounty import Bounty
from app.services.escrow_service import EscrowService
from app.services.ledger_service import SqlLedgerService

pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(session_factory):
    return SqlLedgerService(session_factory)


@pytest.fixture
def service(ledger, session_factory):
    return EscrowService(ledger, session_factory)


@pytest.fixture
def add_bounty(session_factory):
    async def _add(bounty_id: str = "b1", **fields) -> str:
        values = {"creator_id": "poster", "amount_cents": 4000, **fields}
        async with session_factory() as session:
            session.add(Bounty(id=bounty_id, **values))
            await session.commit()
        return bounty_id

    return _add


async def test_fund_moves_amount_out_of_creator_balance(service, ledger, add_bounty):
    await ledger.create_deposit("poster", 5000, "pi_seed")
    bounty_id = await add_bounty()

    tx_id = await service.fund(bounty_id)

    assert tx_id
    assert await ledger.get_balance("poster") == 1000


async def test_fund_twice_is_rejected(service, ledger, add_bounty):
    await ledger.create_deposit("poster", 10000, "pi_seed")
    bounty_id = await add_bounty()
    await service.fund(bounty_id)

    with pytest.raises(BusinessRuleError):
        await service.fund(bounty_id)
    assert await ledger.get_balance("poster") == 6000


@pytest.mark.parametrize(
    "fields",
    [{"is_for_honor": True}, {"amount_cents": 0}, {"status": "completed"}],
)
async def test_fund_rejects_ineligible_bounty(service, ledger, add_bounty, fields):
    await ledger.create_deposit("poster", 5000, "pi_seed")
    bounty_id = await add_bounty(**fields)

    with pytest.raises(BusinessRuleError):
        await service.fund(bounty_id)


async def test_fund_requires_creator_balance(service, add_bounty):
    bounty_id = await add_bounty()

    with pytest.raises(InsufficientFundsError):
        await service.fund(bounty_id)


async def test_fund_unknown_bounty(service):
    with pytest.raises(NotFoundError):
        await service.fund("missing")
