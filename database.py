"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the escrow ledger. PostgreSQL URLs are routed through asyncpg;
SQLite URLs (local runs and tests) through aiosqlite.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_url(url: str) -> str:
    """Map a plain database URL onto its async driver"""
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace("sslmode=require", "ssl=require")
        url = url.replace("sslmode=prefer", "ssl=prefer")
        url = url.replace("sslmode=disable", "ssl=disable")
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def build_async_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    async_url = to_async_url(url or Config.DATABASE_URL)
    if async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=echo)
    return create_async_engine(
        async_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "server_settings": {"application_name": "p2p_escrow_ledger"},
            "timeout": 10,
            "command_timeout": 30,
        },
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Records are read after commit by background jobs
    )


async_engine = build_async_engine()
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions: commit on success, rollback on error"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = engine or async_engine
    logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models registered)...")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info("✅ Database schema verified")
    return True


async def test_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    try:
        async with (engine or async_engine).connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
