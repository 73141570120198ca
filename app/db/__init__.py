"""Database package — shared engine, session factory, and Redis client."""

from app.db.base import (
    Base,
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    drop_tables,
    get_session_factory,
    init_db,
    install_engine,
)
from app.db.redis import close_redis, get_redis, init_redis, ping_redis

__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "close_db",
    "close_redis",
    "create_tables",
    "drop_tables",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "install_engine",
    "ping_redis",
]
