"""LedgerService — atomic wallet operations.

Every public method is one database transaction. Balance changes lock the
user's profile row (``SELECT ... FOR UPDATE``) and are applied as
``balance = balance + delta`` so concurrent operations for the same user
serialize instead of losing updates.

Provider-driven operations are idempotent on the provider object they
reference: a deposit per payment intent, a refund per refund id, a transfer
per transfer id. Event-level dedupe cannot catch two *different* events
pointing at the same financial object; these checks do.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    BusinessRuleError,
    InsufficientFundsError,
    TransferNotFoundError,
    ValidationError,
)
from app.db.models.profile import Profile
from app.db.models.wallet_transaction import TransactionKind, TransactionStatus, WalletTransaction
from app.services.account_service import ensure_profile

logger = structlog.get_logger(__name__)

PLATFORM_ACCOUNT_ID = "platform"


@dataclass(frozen=True)
class LedgerEntry:
    """Read-only view of a committed wallet transaction."""

    id: str
    user_id: str
    kind: TransactionKind
    amount_cents: int
    status: TransactionStatus
    external_ref: str | None = None
    transfer_id: str | None = None
    bounty_id: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: WalletTransaction) -> "LedgerEntry":
        return cls(
            id=row.id,
            user_id=row.user_id,
            kind=TransactionKind(row.kind),
            amount_cents=row.amount_cents,
            status=TransactionStatus(row.status),
            external_ref=row.external_ref,
            transfer_id=row.transfer_id,
            bounty_id=row.bounty_id,
            metadata=dict(row.extra or {}),
            created_at=row.created_at,
        )


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"  # already in the requested status
    ANOMALOUS = "anomalous"  # terminal status would flip, not applied


@dataclass(frozen=True)
class TransferTransition:
    transaction_id: str
    transfer_id: str
    previous_status: TransactionStatus
    requested_status: TransactionStatus
    outcome: TransitionOutcome
    credited_back_cents: int = 0


@runtime_checkable
class LedgerService(Protocol):
    """The ledger operations webhook handlers depend on."""

    async def create_deposit(self, user_id: str, amount_cents: int, external_ref: str) -> str: ...

    async def adjust_balance(self, user_id: str, delta_cents: int, reason: str) -> str: ...

    async def update_transfer_status(
        self,
        transfer_id: str,
        status: TransactionStatus,
        failure_code: str | None = None,
        failure_message: str | None = None,
    ) -> TransferTransition: ...

    async def find_deposit(self, payment_ref: str) -> LedgerEntry | None: ...

    async def create_refund(
        self,
        user_id: str,
        amount_cents: int,
        refund_id: str,
        charge_id: str | None = None,
        payment_ref: str | None = None,
        reason: str | None = None,
    ) -> tuple[str, bool]: ...

    async def attach_transfer(
        self,
        user_id: str,
        amount_cents: int,
        transfer_id: str,
        withdrawal_id: str | None = None,
    ) -> str | None: ...


def _require_positive(amount_cents: int, what: str) -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError(f"{what} amount must be a positive number of cents")


class SqlLedgerService:
    """LedgerService backed by ``wallet_transactions`` and ``profiles``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Helpers ─────────────────────────────────────────────────────

    async def _lock_profile(self, session: AsyncSession, user_id: str) -> Profile:
        result = await session.execute(select(Profile).where(Profile.user_id == user_id).with_for_update())
        return result.scalar_one()

    async def _apply_delta(
        self,
        session: AsyncSession,
        profile: Profile,
        delta_cents: int,
        allow_negative: bool = False,
    ) -> None:
        """Apply a balance change to a profile already locked in ``session``."""
        if delta_cents < 0 and not allow_negative and profile.balance_cents + delta_cents < 0:
            raise InsufficientFundsError(profile.user_id, profile.balance_cents, -delta_cents)

        await session.execute(
            update(Profile)
            .where(Profile.id == profile.id)
            .values(balance_cents=Profile.balance_cents + delta_cents, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    async def _find_by_ref(self, session: AsyncSession, kind: TransactionKind, external_ref: str) -> str | None:
        return await session.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.kind == kind.value,
                WalletTransaction.external_ref == external_ref,
            )
        )

    # ── Provider-driven operations ──────────────────────────────────

    async def create_deposit(self, user_id: str, amount_cents: int, external_ref: str) -> str:
        """Credit a deposit for a payment, once per payment reference.

        Returns:
            The transaction id (the existing one if the payment was already applied)
        """
        _require_positive(amount_cents, "Deposit")
        await ensure_profile(self.session_factory, user_id)

        async with self.session_factory() as session:
            existing = await self._find_by_ref(session, TransactionKind.DEPOSIT, external_ref)
            if existing:
                logger.info("deposit_already_recorded", user_id=user_id, external_ref=external_ref)
                return existing

            profile = await self._lock_profile(session, user_id)
            tx_id = str(uuid.uuid4())
            session.add(
                WalletTransaction(
                    id=tx_id,
                    user_id=user_id,
                    kind=TransactionKind.DEPOSIT.value,
                    amount_cents=amount_cents,
                    status=TransactionStatus.COMPLETED.value,
                    description="Deposit via Stripe",
                    external_ref=external_ref,
                    extra={"payment_intent_id": external_ref, "created_via": "webhook"},
                )
            )
            try:
                await self._apply_delta(session, profile, amount_cents)
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent deposit for the same payment
                await session.rollback()
                existing = await self._find_by_ref(session, TransactionKind.DEPOSIT, external_ref)
                if existing is None:
                    raise
                return existing

        logger.info("deposit_recorded", user_id=user_id, amount_cents=amount_cents, external_ref=external_ref)
        return tx_id

    async def find_deposit(self, payment_ref: str) -> LedgerEntry | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.kind == TransactionKind.DEPOSIT.value,
                    WalletTransaction.external_ref == payment_ref,
                )
            )
            row = result.scalar_one_or_none()
            return LedgerEntry.from_row(row) if row else None

    async def create_refund(
        self,
        user_id: str,
        amount_cents: int,
        refund_id: str,
        charge_id: str | None = None,
        payment_ref: str | None = None,
        reason: str | None = None,
    ) -> tuple[str, bool]:
        """Debit a refund, once per refund id.

        Partial refunds of one charge carry distinct refund ids and each is
        applied. The balance may go negative: the money has already left.

        Returns:
            (transaction id, True if created now / False if already applied)
        """
        _require_positive(amount_cents, "Refund")
        await ensure_profile(self.session_factory, user_id)

        async with self.session_factory() as session:
            existing = await self._find_by_ref(session, TransactionKind.REFUND, refund_id)
            if existing:
                logger.info("refund_already_recorded", refund_id=refund_id, transaction_id=existing)
                return existing, False

            profile = await self._lock_profile(session, user_id)
            tx_id = str(uuid.uuid4())
            session.add(
                WalletTransaction(
                    id=tx_id,
                    user_id=user_id,
                    kind=TransactionKind.REFUND.value,
                    amount_cents=-amount_cents,
                    status=TransactionStatus.COMPLETED.value,
                    description="Payment refunded",
                    external_ref=refund_id,
                    charge_id=charge_id,
                    extra={"refund_reason": reason, "original_payment_intent_id": payment_ref},
                )
            )
            try:
                await self._apply_delta(session, profile, -amount_cents, allow_negative=True)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_by_ref(session, TransactionKind.REFUND, refund_id)
                if existing is None:
                    raise
                return existing, False

        logger.info("refund_recorded", user_id=user_id, refund_id=refund_id, amount_cents=amount_cents)
        return tx_id, True

    async def attach_transfer(
        self,
        user_id: str,
        amount_cents: int,
        transfer_id: str,
        withdrawal_id: str | None = None,
    ) -> str | None:
        """Link a provider transfer to a pending withdrawal.

        With ``withdrawal_id`` (set in the metadata of transfers this service
        creates) only that withdrawal is considered. Otherwise the user's newest
        pending withdrawal of the same amount is used.

        Returns:
            The withdrawal's transaction id, or None when nothing matches.
            Re-attaching an already linked transfer returns the linked row.
        """
        async with self.session_factory() as session:
            linked = await session.scalar(
                select(WalletTransaction.id).where(WalletTransaction.transfer_id == transfer_id)
            )
            if linked:
                logger.info("transfer_already_attached", transfer_id=transfer_id, transaction_id=linked)
                return linked

            query = select(WalletTransaction).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.kind == TransactionKind.WITHDRAWAL.value,
                WalletTransaction.amount_cents == -amount_cents,
                WalletTransaction.status == TransactionStatus.PENDING.value,
                WalletTransaction.transfer_id.is_(None),
            )
            if withdrawal_id:
                query = query.where(WalletTransaction.id == withdrawal_id)
            result = await session.execute(
                query.order_by(WalletTransaction.created_at.desc()).limit(1).with_for_update()
            )
            tx = result.scalar_one_or_none()
            if tx is None:
                return None

            tx.transfer_id = transfer_id
            tx.extra = {**(tx.extra or {}), "transfer_status": "created"}
            tx_id = tx.id
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await session.scalar(
                    select(WalletTransaction.id).where(WalletTransaction.transfer_id == transfer_id)
                )

        logger.info("transfer_attached", transfer_id=transfer_id, transaction_id=tx_id, user_id=user_id)
        return tx_id

    async def update_transfer_status(
        self,
        transfer_id: str,
        status: TransactionStatus,
        failure_code: str | None = None,
        failure_message: str | None = None,
    ) -> TransferTransition:
        """Move a transfer's withdrawal out of ``pending``.

        ``pending -> failed`` also credits the held amount back to the user in
        the same transaction. Repeating a status is a no-op; flipping one
        terminal status to the other is reported as anomalous and not applied.

        Raises:
            TransferNotFoundError: no withdrawal is linked to ``transfer_id``
        """
        status = TransactionStatus(status)
        if status is TransactionStatus.PENDING:
            raise ValidationError("A transfer can only move to completed or failed")

        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletTransaction).where(WalletTransaction.transfer_id == transfer_id).with_for_update()
            )
            tx = result.scalar_one_or_none()
            if tx is None:
                raise TransferNotFoundError(transfer_id)

            previous = TransactionStatus(tx.status)
            if previous is status:
                return TransferTransition(tx.id, transfer_id, previous, status, TransitionOutcome.UNCHANGED)
            if previous is not TransactionStatus.PENDING:
                return TransferTransition(tx.id, transfer_id, previous, status, TransitionOutcome.ANOMALOUS)

            metadata = dict(tx.extra or {})
            credited = 0
            if status is TransactionStatus.COMPLETED:
                metadata.update(transfer_status="paid", paid_at=datetime.now(UTC).isoformat())
            else:
                credited = abs(tx.amount_cents)
                metadata.update(
                    transfer_status="failed",
                    failure_code=failure_code,
                    failure_message=failure_message,
                    credited_back_cents=credited,
                )
                profile = await self._lock_profile(session, tx.user_id)
                await self._apply_delta(session, profile, credited)

            tx.status = status.value
            tx.extra = metadata
            tx_id = tx.id
            await session.commit()

        logger.info(
            "transfer_status_updated",
            transfer_id=transfer_id,
            previous_status=previous.value,
            status=status.value,
            credited_back_cents=credited,
        )
        return TransferTransition(tx_id, transfer_id, previous, status, TransitionOutcome.APPLIED, credited)

    # ── Direct operations ───────────────────────────────────────────

    async def adjust_balance(self, user_id: str, delta_cents: int, reason: str, allow_negative: bool = False) -> str:
        """Record a manual balance correction."""
        if isinstance(delta_cents, bool) or not isinstance(delta_cents, int) or delta_cents == 0:
            raise ValidationError("Adjustment must be a non-zero number of cents")
        await ensure_profile(self.session_factory, user_id)

        async with self.session_factory() as session:
            profile = await self._lock_profile(session, user_id)
            tx_id = str(uuid.uuid4())
            session.add(
                WalletTransaction(
                    id=tx_id,
                    user_id=user_id,
                    kind=TransactionKind.ADJUSTMENT.value,
                    amount_cents=delta_cents,
                    status=TransactionStatus.COMPLETED.value,
                    description=reason,
                )
            )
            await self._apply_delta(session, profile, delta_cents, allow_negative=allow_negative)
            await session.commit()

        logger.info("balance_adjusted", user_id=user_id, delta_cents=delta_cents, reason=reason)
        return tx_id

    async def create_withdrawal(self, user_id: str, amount_cents: int) -> str:
        """Hold funds for a payout; stays pending until the transfer settles."""
        _require_positive(amount_cents, "Withdrawal")
        await ensure_profile(self.session_factory, user_id)

        async with self.session_factory() as session:
            profile = await self._lock_profile(session, user_id)
            tx_id = str(uuid.uuid4())
            session.add(
                WalletTransaction(
                    id=tx_id,
                    user_id=user_id,
                    kind=TransactionKind.WITHDRAWAL.value,
                    amount_cents=-amount_cents,
                    status=TransactionStatus.PENDING.value,
                    description="Withdrawal to connected account",
                )
            )
            await self._apply_delta(session, profile, -amount_cents)
            await session.commit()

        logger.info("withdrawal_created", user_id=user_id, amount_cents=amount_cents, transaction_id=tx_id)
        return tx_id

    async def fail_withdrawal(self, transaction_id: str, reason: str) -> int:
        """Fail a pending withdrawal whose transfer was never created, crediting it back.

        Returns:
            Cents credited back (0 if the withdrawal was no longer pending)
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletTransaction)
                .where(
                    WalletTransaction.id == transaction_id,
                    WalletTransaction.kind == TransactionKind.WITHDRAWAL.value,
                )
                .with_for_update()
            )
            tx = result.scalar_one_or_none()
            if tx is None:
                raise ValidationError(f"Unknown withdrawal '{transaction_id}'")
            if tx.status != TransactionStatus.PENDING.value or tx.transfer_id:
                logger.warning("withdrawal_not_failable", transaction_id=transaction_id, status=tx.status)
                return 0

            credited = abs(tx.amount_cents)
            profile = await self._lock_profile(session, tx.user_id)
            await self._apply_delta(session, profile, credited)
            tx.status = TransactionStatus.FAILED.value
            tx.extra = {**(tx.extra or {}), "failure_message": reason, "credited_back_cents": credited}
            await session.commit()

        logger.info("withdrawal_failed", transaction_id=transaction_id, credited_back_cents=credited)
        return credited

    async def create_escrow(self, bounty_id: str, poster_id: str, amount_cents: int) -> str:
        """Move a bounty's reward out of the poster's balance into escrow."""
        _require_positive(amount_cents, "Escrow")
        await ensure_profile(self.session_factory, poster_id)

        async with self.session_factory() as session:
            if await self._find_by_ref(session, TransactionKind.ESCROW, bounty_id):
                raise BusinessRuleError("Escrow already exists for this bounty")

            profile = await self._lock_profile(session, poster_id)
            tx_id = str(uuid.uuid4())
            session.add(
                WalletTransaction(
                    id=tx_id,
                    user_id=poster_id,
                    kind=TransactionKind.ESCROW.value,
                    amount_cents=-amount_cents,
                    status=TransactionStatus.COMPLETED.value,
                    description=f"Escrow for bounty {bounty_id}",
                    external_ref=bounty_id,
                    bounty_id=bounty_id,
                )
            )
            try:
                await self._apply_delta(session, profile, -amount_cents)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise BusinessRuleError("Escrow already exists for this bounty") from exc

        logger.info("escrow_created", bounty_id=bounty_id, poster_id=poster_id, amount_cents=amount_cents)
        return tx_id

    async def release_escrow(self, bounty_id: str, hunter_id: str, platform_fee_cents: int) -> LedgerEntry:
        """Pay a bounty's escrow to the hunter, keeping the platform fee.

        Raises:
            BusinessRuleError: already released, or no escrow held for the bounty
            ValidationError: fee is negative or exceeds the escrowed amount
        """
        await ensure_profile(self.session_factory, hunter_id)

        async with self.session_factory() as session:
            if await self._find_by_ref(session, TransactionKind.RELEASE, bounty_id):
                raise BusinessRuleError("Escrow already released for this bounty")

            result = await session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.kind == TransactionKind.ESCROW.value,
                    WalletTransaction.external_ref == bounty_id,
                    WalletTransaction.status == TransactionStatus.COMPLETED.value,
                )
            )
            escrow = result.scalar_one_or_none()
            if escrow is None:
                raise BusinessRuleError("No escrow is held for this bounty")

            amount = abs(escrow.amount_cents)
            if platform_fee_cents < 0 or platform_fee_cents > amount:
                raise ValidationError("Platform fee must be between zero and the escrowed amount")
            release_cents = amount - platform_fee_cents

            profile = await self._lock_profile(session, hunter_id)
            release = WalletTransaction(
                id=str(uuid.uuid4()),
                user_id=hunter_id,
                kind=TransactionKind.RELEASE.value,
                amount_cents=release_cents,
                status=TransactionStatus.COMPLETED.value,
                description=f"Payment for bounty {bounty_id}",
                external_ref=bounty_id,
                bounty_id=bounty_id,
                extra={
                    "escrow_transaction_id": escrow.id,
                    "platform_fee_cents": platform_fee_cents,
                    "released_at": datetime.now(UTC).isoformat(),
                },
            )
            session.add(release)
            if platform_fee_cents:
                session.add(
                    WalletTransaction(
                        id=str(uuid.uuid4()),
                        user_id=PLATFORM_ACCOUNT_ID,
                        kind=TransactionKind.PLATFORM_FEE.value,
                        amount_cents=platform_fee_cents,
                        status=TransactionStatus.COMPLETED.value,
                        description=f"Platform fee for bounty {bounty_id}",
                        external_ref=bounty_id,
                        bounty_id=bounty_id,
                    )
                )
            try:
                if release_cents:
                    await self._apply_delta(session, profile, release_cents)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise BusinessRuleError("Escrow already released for this bounty") from exc

            entry = LedgerEntry.from_row(release)

        logger.info(
            "escrow_released",
            bounty_id=bounty_id,
            hunter_id=hunter_id,
            release_cents=release_cents,
            platform_fee_cents=platform_fee_cents,
        )
        return entry

    # ── Queries ─────────────────────────────────────────────────────

    async def get_release(self, bounty_id: str) -> LedgerEntry | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.kind == TransactionKind.RELEASE.value,
                    WalletTransaction.external_ref == bounty_id,
                )
            )
            row = result.scalar_one_or_none()
            return LedgerEntry.from_row(row) if row else None

    async def get_balance(self, user_id: str) -> int:
        async with self.session_factory() as session:
            balance = await session.scalar(select(Profile.balance_cents).where(Profile.user_id == user_id))
            return balance or 0

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.user_id == user_id)
                .order_by(WalletTransaction.created_at.desc())
                .limit(limit)
            )
            return [LedgerEntry.from_row(row) for row in result.scalars().all()]
