"""Common test fixtures and configuration for pytest.

Database tests run against a throwaway SQLite file per test, so batch runs
that open their own sessions see the same data as the test's session.
"""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from cadence.db.session import build_session_factory
from cadence.models._base import Base

# Import all fixtures so they are automatically available for all tests
from tests.fixtures.common import (  # noqa
    FakePaymentProcessor,
    basic_plan,
    clock,
    ledger,
    payment_method,
    premium_plan,
    processor,
    retired_plan,
    state_machine,
    trial_plan,
    usage_tracker,
    user_id,
)


# Mock DB Session for Unit Tests
@pytest.fixture
async def mock_db_session():
    """Provide a mock DB session for unit tests."""
    from unittest.mock import AsyncMock

    mock_session = AsyncMock(spec=AsyncSession)
    yield mock_session


@pytest.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a test database engine for each test function."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cadence.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory handed to batch runs."""
    return build_session_factory(db_engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Database session for the test body."""
    async with session_factory() as session:
        yield session
