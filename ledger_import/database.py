"""Database configuration and session management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ledger_import.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=10,  # Max persistent connections
            max_overflow=20,  # Additional transient connections under load
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return options


def _enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it
    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str | None = None, **overrides: Any) -> AsyncEngine:
    """Create an async engine for the configured (or given) database URL."""
    url = database_url or settings.database_url
    options = _engine_options(url)
    options.update(overrides)
    async_engine = create_async_engine(url, **options)
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(async_engine)
    return async_engine


engine = build_engine()

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Test hook to override session maker
_test_session_maker: async_sessionmaker[AsyncSession] | None = None


def set_test_session_maker(
    maker: async_sessionmaker[AsyncSession] | None,
) -> async_sessionmaker[AsyncSession] | None:
    """Set test session maker and return the previous value."""
    global _test_session_maker
    previous = _test_session_maker
    _test_session_maker = maker
    return previous


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database session."""
    maker = _test_session_maker or async_session_maker
    async with maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """
    Schema is created by the Alembic revisions under migrations/ (`alembic upgrade head`);
    this only records that the database layer is ready.
    """
    from ledger_import.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Database initialized (schema managed by alembic)")
