"""Database engine and session management.

Monitors and the ingestion job each open short-lived sessions from one shared
pool. ``DATABASE_ERRORS`` lists what a statement can raise when PostgreSQL is
unreachable or drops the connection: asyncpg surfaces a refused or reset
socket as a plain ``OSError`` rather than a SQLAlchemy error.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hzpp_delays.config import get_settings
from hzpp_delays.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

# TimeoutError is an OSError subclass, so statement and connect timeouts are covered.
DATABASE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the engine shared by every route monitor."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            str(settings.database_url),
            echo=settings.debug,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
        logger.info(
            "Database engine created",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session and close it on exit.

    Closing a session whose connection already died is logged and swallowed,
    so the error that killed the connection is the one the caller sees.
    """
    session = get_session_factory()()
    try:
        yield session
    finally:
        try:
            await session.close()
        except DATABASE_ERRORS as exc:
            logger.warning("Failed to close database session", error=str(exc))


async def check_database_connection() -> bool:
    """Check if database is reachable."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database health check failed", error=str(exc))
        return False
    return True


async def close_database() -> None:
    """Dispose of the pool on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
