"""Profile model — per-user wallet balance and Stripe Connect state."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.db.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    balance_cents = Column(Integer, nullable=False, default=0)

    # Stripe Connect
    stripe_account_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_connect_onboarded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
