"""IdempotencyKey model — presence of a row marks a client request as taken."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from app.db.base import Base


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String(255), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
