"""
Database engine for Ghost Trade Engine

One lazily created AsyncEngine per process. PostgreSQL (asyncpg) in
production; SQLite (aiosqlite) is accepted for local runs and tests.
"""

from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from config.config import DATABASE_URL, ENVIRONMENT
from src.database.models import Base


# Global engine and session maker
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str) -> Dict[str, Any]:
    """
    create_async_engine keyword arguments for a database URL

    The worker holds few connections at once (one per trade being
    processed plus the audit writer), so pools stay small.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # Every session must see the same in-memory database
            options["poolclass"] = StaticPool
        return options

    is_production = ENVIRONMENT == "production"
    options = {
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": 5 if is_production else 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }
    if url.drivername == "postgresql+asyncpg":
        options["connect_args"] = {
            "statement_cache_size": 0,  # pgbouncer in transaction mode
            "server_settings": {"application_name": "ghost_trade_worker"},
        }
    return options


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Process-wide engine (created on first use)

    Args:
        database_url: Override DATABASE_URL on first creation
    """
    global engine

    if engine is None:
        url = database_url or DATABASE_URL
        engine = create_async_engine(url, echo=False, **engine_options(url))
        logger.info(f"Database engine created ({make_url(url).get_backend_name()}, {ENVIRONMENT})")

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the process engine"""
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,  # models are read after commit in services
            autoflush=False,
        )

    return AsyncSessionLocal


async def init_db() -> None:
    """
    Create all tables directly from the models

    Local runs only; deployed databases are migrated with Alembic.
    """
    if ENVIRONMENT == "production":
        raise RuntimeError("Use Alembic migrations in production")

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def dispose_engine() -> None:
    """Close pooled connections (worker shutdown)"""
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
    engine = None
    AsyncSessionLocal = None


async def check_connection() -> bool:
    """
    Round-trip a trivial query

    Returns:
        True if the database answered
    """
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection check: OK")
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
