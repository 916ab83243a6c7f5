"""Database session configuration."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cadence.core.config import settings

SessionFactory = Callable[[], AsyncSession]

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Create the engine on first use so importing this module never opens a pool."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            str(settings.SQLALCHEMY_ASYNC_DATABASE_URI),
            pool_size=10,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=300,  # Recycle connections after 5 minutes
            pool_timeout=30,
            # Optimistic updates rely on seeing other writers' committed rows
            isolation_level="READ COMMITTED",
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(), autoflush=False, expire_on_commit=False
        )
    return _session_factory


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an explicit engine (tests, scripts)."""
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@asynccontextmanager
async def get_db_context(
    session_factory: Optional[SessionFactory] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session that can be used as a context manager.

    Yields:
        AsyncSession: An async database session

    Example:
    -------
        async with get_db_context() as db:
            await db.execute(...)

    """
    factory = session_factory or get_session_factory()
    async with factory() as db:
        try:
            yield db
        finally:
            await db.close()
