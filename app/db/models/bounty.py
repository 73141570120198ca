"""Bounty model — the parts of a bounty the payment flows read and update."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class Bounty(Base):
    __tablename__ = "bounties"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    creator_id = Column(String(255), nullable=False, index=True)
    hunter_id = Column(String(255), nullable=True, index=True)  # assigned hunter, if any

    amount_cents = Column(Integer, nullable=False, default=0)
    is_for_honor = Column(Boolean, nullable=False, default=False)
    status = Column(String(50), nullable=False, default="open")  # open, in_progress, completed, cancelled

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
