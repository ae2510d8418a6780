"""Async database session factory and tenant-scoped transactions."""

import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from eventrelay.config import get_settings

# Module-level singletons (lazily initialized)
_engine: AsyncEngine | None = None
_async_session: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Open SQLite transactions with BEGIN IMMEDIATE.

    pysqlite's deferred BEGIN lets two connections hold read locks and then
    deadlock when both try to write. Taking the write lock up front makes
    concurrent claimers queue on the busy timeout instead. Foreign keys are
    switched on so deletes cascade as they do on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Create an async engine with dialect-appropriate settings."""
    # SQLite doesn't support connection pooling parameters
    engine_kwargs: dict = {"echo": echo}

    # Only add pool parameters for non-SQLite databases
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = max_overflow
        engine_kwargs["pool_pre_ping"] = True

    engine = create_async_engine(database_url, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    return engine


def get_engine() -> AsyncEngine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_database_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_pool_max_overflow,
        )
    return _engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (lazy initialization)."""
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session


# Convenience function that returns a session factory for use in with statements
def async_session() -> AsyncSession:
    """Get a new async session from the factory.

    Usage:
        async with async_session() as session:
            ...
    """
    return get_async_session_factory()()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with get_async_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to."""
    return session.get_bind().dialect.name


async def set_tenant_context(session: AsyncSession, tenant_id: uuid.UUID) -> None:
    """Pin the current transaction to a tenant.

    On PostgreSQL this sets ``app.current_tenant_id`` for the duration of the
    transaction so row-level security policies can key off it. Queries still
    filter on ``tenant_id`` explicitly.
    """
    if dialect_name(session) == "postgresql":
        await session.execute(
            text("SELECT set_config('app.current_tenant_id', :tenant_id, true)"),
            {"tenant_id": str(tenant_id)},
        )


@asynccontextmanager
async def tenant_session(
    tenant_id: uuid.UUID,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Run a block in one transaction scoped to a single tenant.

    Commits on success, rolls back on error.

    Usage:
        async with tenant_session(tenant_id) as session:
            ...
    """
    factory = session_factory or get_async_session_factory()
    async with factory() as session:
        async with session.begin():
            await set_tenant_context(session, tenant_id)
            yield session


async def close_engine() -> None:
    """Close the database engine and dispose of connection pool."""
    global _engine, _async_session
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session = None
