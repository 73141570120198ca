"""Declarative base plus the process-wide engine and session factory."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    # pre-ping only where a server can drop idle connections
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are read after commit by the ledger and event store
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    import app.db.models  # noqa: F401  registers every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: AsyncEngine) -> None:
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


def install_engine(engine: AsyncEngine | None) -> None:
    """Point get_session_factory() at ``engine``; None uninstalls."""
    global _engine, _session_factory

    _engine = engine
    _session_factory = build_session_factory(engine) if engine is not None else None


async def init_db(url: str | None = None, create_schema: bool = True) -> None:
    """Open the shared engine once per process.

    Args:
        url: overrides DATABASE_URL
        create_schema: create missing tables (the API does, the replay script does not)
    """
    if _engine is not None:
        return

    settings = get_settings()
    engine = build_engine(url or settings.database_url, echo=settings.debug)
    if create_schema:
        await create_tables(engine)
    install_engine(engine)


async def close_db() -> None:
    if _engine is not None:
        engine = _engine
        install_engine(None)
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Raises RuntimeError until init_db() or install_engine() has run."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
