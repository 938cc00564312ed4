"""
Database Connection Module
Handles the async SQLAlchemy engine for PostgreSQL (psycopg) and SQLite (aiosqlite).

Every engine operation runs inside one ``AsyncSession.begin()`` block. On
PostgreSQL rows that are read and then written are locked with
``SELECT ... FOR UPDATE``. SQLite ignores FOR UPDATE, so SQLite connections
open every transaction with ``BEGIN IMMEDIATE`` which serializes writers.
"""

import logging
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from orderflow.core.config import get_settings

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def _install_sqlite_transaction_mode(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself instead of the pysqlite driver.

    The driver's implicit BEGIN is deferred and only takes a write lock on
    the first write, which lets two transactions both read a free table and
    then deadlock on the upgrade. BEGIN IMMEDIATE takes the write lock up front.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Args:
        database_url: ``postgresql+psycopg://...`` or ``sqlite+aiosqlite:///...``
        echo: Log all SQL statements

    Returns:
        Configured AsyncEngine
    """
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        _install_sqlite_transaction_mode(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
        pool_pre_ping=True,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``; objects stay usable after commit."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings."""
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.database_echo)


@lru_cache()
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory."""
    return build_session_maker(get_engine())


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Model classes must be registered on Base.metadata before create_all
    import orderflow.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")
