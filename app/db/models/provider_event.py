"""ProviderEvent model — audit log and dedupe record for inbound webhook events."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from app.db.base import Base


class ProviderEvent(Base):
    """One row per provider event id. Never deleted; ``processed`` flips once."""

    __tablename__ = "provider_events"
    __table_args__ = (
        # Backlog scans: unprocessed events, oldest first
        Index("ix_provider_events_processed_received_at", "processed", "received_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(255), nullable=False, index=True)

    # Body exactly as received (the bytes the signature covered)
    raw_payload = Column(Text, nullable=False)
    provider_created_at = Column(DateTime(timezone=True), nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Delivery bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # in-flight lease, NULL when idle
    last_error = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
