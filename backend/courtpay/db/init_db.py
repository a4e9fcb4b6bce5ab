"""
Database Initialization

Creates the SQLite schema for CourtPay and builds the async session factory.
WAL mode is enabled so the sweeper and request handlers can write
concurrently without "database is locked" errors.
"""
import logging
import sqlite3
from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def enable_wal_mode(db_path: Path) -> None:
    """Switch the database file to WAL journaling (persists across connections)."""
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
        cursor.execute("PRAGMA synchronous=NORMAL")
        conn.commit()
    finally:
        conn.close()


def build_engine(database_path: str) -> AsyncEngine:
    """Create the async engine for a SQLite file."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
        pool_recycle=3600
    )


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def create_tables(db_engine: AsyncEngine) -> None:
    """Create all tables and indexes that do not exist yet."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def initialize_database(db_engine: AsyncEngine, database_path: str) -> None:
    """
    Initialize the database with all required tables.

    This function is called during FastAPI startup.
    """
    db_path = Path(database_path)
    logger.info(f"Initializing database at: {db_path}")

    db_path.parent.mkdir(parents=True, exist_ok=True)
    enable_wal_mode(db_path)
    await create_tables(db_engine)

    logger.info(f"Database initialized successfully at {db_path}")
