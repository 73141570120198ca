"""AccountService — profile rows and Stripe Connect onboarding state."""

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.profile import Profile

logger = structlog.get_logger(__name__)


async def ensure_profile(session_factory: async_sessionmaker[AsyncSession], user_id: str) -> None:
    """Create the user's profile row if it does not exist yet."""
    async with session_factory() as session:
        existing = await session.scalar(select(Profile.id).where(Profile.user_id == user_id))
        if existing is not None:
            return
        try:
            session.add(Profile(user_id=user_id, balance_cents=0))
            await session.commit()
            logger.info("profile_created", user_id=user_id)
        except IntegrityError:
            # Concurrent request created it first
            await session.rollback()


@runtime_checkable
class AccountService(Protocol):
    async def update_connect_status(self, user_id: str, account_id: str, onboarded: bool) -> None: ...


class SqlAccountService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def update_connect_status(self, user_id: str, account_id: str, onboarded: bool) -> None:
        """Record the Connect account and whether its requirements are satisfied.

        The first onboarding timestamp is kept across repeated updates; an
        account that falls back out of compliance clears it.
        """
        await ensure_profile(self.session_factory, user_id)

        async with self.session_factory() as session:
            result = await session.execute(select(Profile).where(Profile.user_id == user_id).with_for_update())
            profile = result.scalar_one()

            profile.stripe_account_id = account_id
            if onboarded:
                if profile.stripe_connect_onboarded_at is None:
                    profile.stripe_connect_onboarded_at = datetime.now(UTC)
            else:
                profile.stripe_connect_onboarded_at = None

            await session.commit()

        logger.info("connect_status_updated", user_id=user_id, account_id=account_id, onboarded=onboarded)

    async def get_profile(self, user_id: str) -> Profile | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Profile).where(Profile.user_id == user_id))
            return result.scalar_one_or_none()
