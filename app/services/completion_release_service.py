"""Completion release — pay a finished bounty's escrow out to its hunter."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import BusinessRuleError, NotFoundError, ValidationError
from app.db.models.bounty import Bounty
from app.services.account_service import SqlAccountService
from app.services.ledger_service import LedgerEntry, SqlLedgerService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReleaseRequest:
    bounty_id: str
    hunter_id: str
    platform_fee_percentage: float | None = None


@dataclass(frozen=True)
class ReleaseResult:
    transaction_id: str
    release_amount_cents: int
    platform_fee_cents: int


@dataclass(frozen=True)
class ReleaseStatus:
    bounty_id: str
    released: bool
    transaction: LedgerEntry | None = None


def compute_platform_fee(amount_cents: int, percentage: float) -> int:
    """Fee in cents, rounded half up (2.5 cents -> 3)."""
    if percentage < 0 or percentage > 100:
        raise ValidationError("Platform fee percentage must be between 0 and 100")
    fee = Decimal(amount_cents) * Decimal(str(percentage)) / Decimal(100)
    return int(fee.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class CompletionReleaseService:
    def __init__(
        self,
        ledger: SqlLedgerService,
        accounts: SqlAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        default_fee_percentage: float = 5.0,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.session_factory = session_factory
        self.default_fee_percentage = default_fee_percentage

    async def _get_bounty(self, bounty_id: str) -> Bounty | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Bounty).where(Bounty.id == bounty_id))
            return result.scalar_one_or_none()

    async def process(self, request: ReleaseRequest) -> ReleaseResult:
        """Release escrow for a completed bounty.

        Raises:
            BusinessRuleError: the bounty cannot be paid out to this hunter
            ValidationError: fee percentage out of range
        """
        log = logger.bind(bounty_id=request.bounty_id, hunter_id=request.hunter_id)

        bounty = await self._get_bounty(request.bounty_id)
        if bounty is None:
            raise BusinessRuleError("Bounty not found")
        if bounty.is_for_honor:
            raise BusinessRuleError("Honor-only bounties have no payment to release")
        if not bounty.amount_cents or bounty.amount_cents <= 0:
            raise BusinessRuleError("Bounty has no amount to release")
        if bounty.hunter_id and bounty.hunter_id != request.hunter_id:
            raise BusinessRuleError("Hunter is not assigned to this bounty")

        profile = await self.accounts.get_profile(request.hunter_id)
        if profile is None or not profile.stripe_account_id:
            raise BusinessRuleError("Hunter has no connected payout account")

        if await self.ledger.get_release(request.bounty_id) is not None:
            raise BusinessRuleError("Escrow already released for this bounty")

        percentage = request.platform_fee_percentage
        if percentage is None:
            percentage = self.default_fee_percentage
        fee_cents = compute_platform_fee(bounty.amount_cents, percentage)

        entry = await self.ledger.release_escrow(request.bounty_id, request.hunter_id, fee_cents)

        async with self.session_factory() as session:
            await session.execute(
                update(Bounty)
                .where(Bounty.id == request.bounty_id)
                .values(status="completed", hunter_id=request.hunter_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        log.info(
            "completion_release_processed",
            transaction_id=entry.id,
            release_amount_cents=entry.amount_cents,
            platform_fee_cents=fee_cents,
        )
        return ReleaseResult(
            transaction_id=entry.id,
            release_amount_cents=entry.amount_cents,
            platform_fee_cents=fee_cents,
        )

    async def get_status(self, bounty_id: str) -> ReleaseStatus:
        """Raises NotFoundError for an unknown bounty."""
        if await self._get_bounty(bounty_id) is None:
            raise NotFoundError("Bounty", bounty_id)
        entry = await self.ledger.get_release(bounty_id)
        return ReleaseStatus(bounty_id=bounty_id, released=entry is not None, transaction=entry)
