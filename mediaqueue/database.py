"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and
session factory used by the services, the download worker, and the
FastAPI lifespan.

Usage:
    from mediaqueue.database import get_session_factory

    session_factory = get_session_factory()
    async with session_factory() as session, session.begin():
        result = await session.execute(select(Request))
        ...

Services never hold a session across long-running work (downloads,
metadata fetches): they open a short transaction, close it, do the work,
and reopen a new one to persist the result.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from mediaqueue.config import get_database_echo, get_database_url
from mediaqueue.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use.

    SQLite gets no pool sizing; PostgreSQL (asyncpg) gets a bounded pool
    with pre-ping for connection recycling.
    """
    global _engine
    if _engine is None:
        database_url = get_database_url()
        if database_url.startswith("sqlite"):
            _engine = create_async_engine(database_url, echo=get_database_echo())
        else:
            _engine = create_async_engine(
                database_url,
                pool_size=10,
                max_overflow=5,
                pool_pre_ping=True,
                echo=get_database_echo(),
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory bound to get_engine()."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
        )
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database session injection.

    Yields an async database session with automatic commit on success
    and rollback on exception.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create missing tables.

    Alembic is the source of truth for deployed databases; this keeps a
    fresh SQLite file usable without running migrations.
    """
    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine (shutdown hook)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    # In-memory SQLite must share one connection or every session sees an empty DB
    engine_kwargs = {"poolclass": StaticPool} if ":memory:" in database_url else {}
    test_engine = create_async_engine(
        database_url,
        echo=False,
        **engine_kwargs,
    )
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
