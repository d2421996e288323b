"""
Database setup and session management.

One SQLite file holds every table. Each request or background job opens its
own short-lived session.
"""

import os

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config.settings import get_settings
from app.domain.message import Base
# Imported so every table is registered on Base.metadata
from app.domain import channel, delivery, endpoint, rule  # noqa: F401

settings = get_settings()
os.makedirs(settings.data_dir, exist_ok=True)

# Pooled connections, one per session; concurrent writers wait on the SQLite
# file lock and surface "database is locked" once its busy timeout runs out
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    connect_args={"check_same_thread": False},
)

# Objects stay usable after commit; the pipeline reads them across commits
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_database() -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    """Get a new database session (FastAPI dependency)."""
    async with async_session_factory() as session:
        yield session


# Retry policy for short write transactions that hit SQLite lock contention
# ("database is locked" from a concurrent writer on another connection).
# The wrapped unit must roll back before re-raising so it can run again cleanly.
retry_on_locked = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(OperationalError),
    reraise=True
)


class DatabaseSession:
    """Context manager for database sessions."""

    async def __aenter__(self) -> AsyncSession:
        self.session = async_session_factory()
        return self.session

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            await self.session.rollback()
        await self.session.close()
