"""Database connection management.

Provides an async database connection using SQLAlchemy. SQLite (via
aiosqlite) is the default; any async driver URL works.

## Configuration

- DATABASE_URL: Full async connection string
- DATABASE_ECHO: Log SQL statements

## Usage

```python
from ketchup_calendar.database import get_db, init_db

# Initialize on startup
await init_db()

async with get_db() as session:
    pref = await session.get(Preference, "default_calendar_type")
```
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ketchup_calendar.config import get_settings
from ketchup_calendar.database.models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str | None = None) -> None:
    """Initialize the database connection and create missing tables.

    Should be called once on application startup. Calling it again is a
    no-op while a connection is open.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    url = database_url or settings.database_url

    logger.info("Initializing database connection")

    _engine = create_async_engine(
        url,
        pool_pre_ping=True,  # Verify connections before use
        echo=settings.database_echo,
    )

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await create_tables()
    logger.info("Database connection initialized")


async def close_db() -> None:
    """Close the database connection.

    Should be called on application shutdown.
    """
    global _engine, _session_factory

    if _engine:
        logger.info("Closing database connection")
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def create_tables() -> None:
    """Create all database tables that do not exist yet."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.debug("Database tables ensured")


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session.

    Transactions are not automatically committed - call commit() explicitly.
    The session is rolled back on error and always closed.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    session = _session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
