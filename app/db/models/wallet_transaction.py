"""WalletTransaction model — the ledger of balance-affecting operations."""

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, UniqueConstraint

from app.db.base import Base


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    ESCROW = "escrow"
    RELEASE = "release"
    PLATFORM_FEE = "platform_fee"
    ADJUSTMENT = "adjustment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(Base):
    """Signed amounts: credits are positive, debits negative."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        # The same provider object (payment intent, refund, ...) is applied at most once per kind
        UniqueConstraint("kind", "external_ref", name="uq_wallet_transactions_kind_external_ref"),
        Index("ix_wallet_transactions_bounty_kind", "bounty_id", "kind"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)

    kind = Column(String(50), nullable=False)  # TransactionKind values
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, default=TransactionStatus.COMPLETED.value)
    description = Column(Text, nullable=True)

    # Provider references
    external_ref = Column(String(255), nullable=True)
    transfer_id = Column(String(255), nullable=True, unique=True)
    charge_id = Column(String(255), nullable=True, index=True)

    bounty_id = Column(String(255), nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
