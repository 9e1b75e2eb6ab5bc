"""
Database session management.

Provides the async engine and session factory used by the SQL stores.
SQLite URLs are accepted for development and tests (via aiosqlite);
production runs on PostgreSQL via asyncpg.
"""

import logging
import os
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cryptopay_core.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> Optional[str]:
    """Database URL from settings, then DATABASE_URL, normalized to an async driver."""
    url = get_settings().database_url or os.getenv("DATABASE_URL")
    if not url:
        return None
    # Handle Heroku-style postgres:// URLs
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine with pooling suited to the backend."""
    echo = os.getenv("SQL_ECHO", "false").lower() == "true"
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections after 30 min
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        url = get_database_url()
        if not url:
            raise RuntimeError("database_url is not configured")
        _engine = create_engine_for(url)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables if they do not exist."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
