"""
Database testing fixtures for async SQLAlchemy sessions.

Services take a session factory rather than a session, so most tests use
test_session_factory; async_test_session is for tests that poke at rows
directly.

Usage:
    async def test_service(test_session_factory):
        service = RequestService(test_session_factory, NotificationBus())
        ...
"""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.database import create_test_engine
from mediaqueue.models import Base


@pytest.fixture
async def async_test_engine():
    """
    Create an async SQLite in-memory engine for testing.

    Uses StaticPool (via create_test_engine) so every session shares the one
    in-memory database. Schema is created from the models and dropped after.
    """
    engine, _ = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_factory(async_test_engine):
    """Session factory bound to the in-memory engine (expire_on_commit=False)."""
    return async_sessionmaker(
        async_test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def async_test_session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create an async SQLAlchemy session for integration testing.

    Yields:
        AsyncSession connected to the in-memory SQLite database
    """
    async with test_session_factory() as session:
        yield session
