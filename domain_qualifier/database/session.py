"""
Database Session Management

Handles the async engine, session lifecycle, and schema creation.
Designed for both PostgreSQL (asyncpg) and local development (SQLite via aiosqlite).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def _to_async_postgres(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def get_database_url() -> str:
    """
    Get database URL from environment.

    Priority:
    1. DATABASE_URL
    2. POSTGRES_URL (alternative)
    3. SQLite fallback for local development
    """
    url = os.getenv("DATABASE_URL")
    if url:
        logger.info("Using database from DATABASE_URL")
        return _to_async_postgres(url)

    url = os.getenv("POSTGRES_URL")
    if url:
        logger.info("Using PostgreSQL database from POSTGRES_URL")
        return _to_async_postgres(url)

    sqlite_path = os.getenv("SQLITE_PATH", "domain_qualifier_dev.db")
    logger.warning(f"No DATABASE_URL found, using SQLite: {sqlite_path}")
    return f"sqlite+aiosqlite:///{sqlite_path}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: Optional[str] = None) -> AsyncEngine:
    """
    Create database engine with appropriate settings.

    PostgreSQL: Connection pooling sized for the domain concurrency limit
    SQLite: Simpler settings
    """
    url = url or get_database_url()
    echo = os.getenv("SQL_DEBUG", "false").lower() == "true"

    if url.startswith("postgresql"):
        engine = create_async_engine(
            url,
            pool_size=10,               # Base connections
            max_overflow=20,            # Additional connections under load
            pool_timeout=30,            # Wait for connection
            pool_recycle=1800,          # Recycle connections after 30 min
            pool_pre_ping=True,         # Verify connections before use
            echo=echo,
        )
        logger.info("Created PostgreSQL engine with connection pooling")
    else:
        engine = create_async_engine(url, echo=echo)
        logger.info("Created SQLite engine")

    return engine


_engine: Optional[AsyncEngine] = None
_SessionLocal: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to a specific engine."""
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,  # Objects stay readable after the session closes
    )


def get_session_factory() -> async_sessionmaker:
    """Get or create the default session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = build_session_factory(get_engine())
    return _SessionLocal


@asynccontextmanager
async def get_db_context(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Context manager for database sessions.

    Usage:
        async with get_db_context() as db:
            await db.execute(select(BulkAnalysisDomain))
    """
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables that don't exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified")


async def dispose_engine() -> None:
    """Close pooled connections and forget the default engine."""
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None
