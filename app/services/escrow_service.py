"""Escrow funding — hold a bounty's reward out of its creator's balance."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import BusinessRuleError, NotFoundError
from app.db.models.bounty import Bounty
from app.services.ledger_service import SqlLedgerService

logger = structlog.get_logger(__name__)


class EscrowService:
    def __init__(self, ledger: SqlLedgerService, session_factory: async_sessionmaker[AsyncSession]):
        self.ledger = ledger
        self.session_factory = session_factory

    async def fund(self, bounty_id: str) -> str:
        """Escrow the bounty amount from the creator.

        Raises:
            NotFoundError: unknown bounty
            BusinessRuleError: honor-only, no amount, not open, or already escrowed
            InsufficientFundsError: creator balance below the bounty amount
        """
        async with self.session_factory() as session:
            result = await session.execute(select(Bounty).where(Bounty.id == bounty_id))
            bounty = result.scalar_one_or_none()
        if bounty is None:
            raise NotFoundError("Bounty", bounty_id)
        if bounty.is_for_honor:
            raise BusinessRuleError("Honor-only bounties are not escrowed")
        if not bounty.amount_cents or bounty.amount_cents <= 0:
            raise BusinessRuleError("Bounty has no amount to escrow")
        if bounty.status != "open":
            raise BusinessRuleError("Only open bounties can be escrowed")

        tx_id = await self.ledger.create_escrow(bounty.id, bounty.creator_id, bounty.amount_cents)
        logger.info("bounty_escrow_funded", bounty_id=bounty_id, transaction_id=tx_id)
        return tx_id
