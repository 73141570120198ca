"""Event Store — durable dedupe record for inbound provider events.

A claim is a unique-constraint insert. If the row already exists, the claim
distinguishes a processed event (skip) from an unprocessed one (retry), and an
in-flight lease stops two concurrent deliveries of the same event from both
running the handler.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.provider_event import ProviderEvent
from app.webhooks.events import WebhookEvent

logger = structlog.get_logger(__name__)

_MAX_ERROR_LENGTH = 2000


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"  # first sighting, row inserted
    RECLAIMED = "reclaimed"  # earlier attempt failed or crashed, retry allowed
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"  # another delivery holds the lease


@runtime_checkable
class EventStore(Protocol):
    """Persistence contract the dispatcher depends on."""

    async def claim(self, event: WebhookEvent) -> ClaimStatus: ...

    async def mark_processed(self, event_id: str) -> None: ...

    async def release(self, event_id: str, error: str) -> None: ...

    async def record_note(self, event_id: str, note: str) -> None: ...

    async def has_processed_note(self, note: str) -> bool: ...


class SqlEventStore:
    """EventStore backed by the ``provider_events`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: int = 120,
    ):
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds

    async def claim(self, event: WebhookEvent) -> ClaimStatus:
        now = datetime.now(UTC)

        async with self.session_factory() as session:
            try:
                session.add(
                    ProviderEvent(
                        provider_event_id=event.event_id,
                        event_type=event.event_type,
                        raw_payload=event.raw_body,
                        provider_created_at=event.created_at,
                        received_at=now,
                        claimed_at=now,
                        attempts=1,
                    )
                )
                await session.commit()
                return ClaimStatus.CLAIMED
            except IntegrityError:
                await session.rollback()

            # Row exists: take the lease only if unprocessed and nobody holds it
            stale_before = now - timedelta(seconds=self.lease_seconds)
            result = await session.execute(
                update(ProviderEvent)
                .where(
                    ProviderEvent.provider_event_id == event.event_id,
                    ProviderEvent.processed.is_(False),
                    or_(ProviderEvent.claimed_at.is_(None), ProviderEvent.claimed_at < stale_before),
                )
                .values(claimed_at=now, attempts=ProviderEvent.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 1:
                return ClaimStatus.RECLAIMED

            processed = await session.scalar(
                select(ProviderEvent.processed).where(ProviderEvent.provider_event_id == event.event_id)
            )
            return ClaimStatus.ALREADY_PROCESSED if processed else ClaimStatus.IN_FLIGHT

    async def mark_processed(self, event_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(ProviderEvent)
                .where(ProviderEvent.provider_event_id == event_id, ProviderEvent.processed.is_(False))
                .values(processed=True, processed_at=datetime.now(UTC), claimed_at=None, last_error=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 0:
                logger.warning("provider_event_already_marked", event_id=event_id)

    async def release(self, event_id: str, error: str) -> None:
        """Drop the in-flight lease after a failed attempt so a retry can run."""
        async with self.session_factory() as session:
            await session.execute(
                update(ProviderEvent)
                .where(ProviderEvent.provider_event_id == event_id, ProviderEvent.processed.is_(False))
                .values(claimed_at=None, last_error=error[:_MAX_ERROR_LENGTH])
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def record_note(self, event_id: str, note: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ProviderEvent)
                .where(ProviderEvent.provider_event_id == event_id)
                .values(notes=note)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def has_processed_note(self, note: str) -> bool:
        """Whether a processed event carries exactly this note."""
        async with self.session_factory() as session:
            found = await session.scalar(
                select(ProviderEvent.id)
                .where(ProviderEvent.notes == note, ProviderEvent.processed.is_(True))
                .limit(1)
            )
            return found is not None

    async def get(self, event_id: str) -> ProviderEvent | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderEvent).where(ProviderEvent.provider_event_id == event_id)
            )
            return result.scalar_one_or_none()

    async def list_backlog(self, older_than_seconds: int = 0, limit: int = 100) -> list[ProviderEvent]:
        """Unprocessed events received at least ``older_than_seconds`` ago, oldest first."""
        cutoff = datetime.now(UTC) - timedelta(seconds=older_than_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderEvent)
                .where(ProviderEvent.processed.is_(False), ProviderEvent.received_at <= cutoff)
                .order_by(ProviderEvent.received_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())
