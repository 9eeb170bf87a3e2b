"""Test fixtures and configuration."""

import logging
import os
import sys
from uuid import uuid4

# Settings are read at import time; point them at SQLite before the package loads
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_import import database
from ledger_import.database import Base, build_engine
from ledger_import.logger import get_logger
from ledger_import.services.execution import ExecutionEngine
from ledger_import.services.matching import MatchingConfig
from ledger_import.services.review_session import ImportReviewService, ReviewSessionStore

logger = get_logger(__name__)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True, scope="session")
def console_logging():
    """Plain console rendering on stdout so capsys sees service logs."""
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=pre_chain,
        )
    )
    root = logging.getLogger()
    previous = root.handlers[:]
    root.handlers = [handler]
    root.setLevel(logging.DEBUG)

    yield

    root.handlers = previous
    structlog.reset_defaults()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Fresh in-memory SQLite schema per test.

    StaticPool keeps the single in-memory connection alive, so every session in a
    test (fixtures and API handlers) sees the same database. Tests must not hold an
    open transaction on the db fixture while an API call runs.
    """
    from ledger_import.models import DuplicateExclusion, LedgerTransaction  # noqa: F401

    engine = build_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function", autouse=True)
async def patch_database_connection(db_engine):
    """Route API handlers to the test engine."""
    test_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    database.set_test_session_maker(test_maker)
    yield
    database.set_test_session_maker(None)


@pytest_asyncio.fixture(scope="function")
async def db(db_engine):
    """Database session for service-level tests."""
    session = AsyncSession(db_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def matching_config():
    """Defaults pinned in code so tests do not depend on config/matching.yaml."""
    return MatchingConfig()


@pytest.fixture
def review_service(matching_config):
    return ImportReviewService(
        store=ReviewSessionStore(ttl_minutes=60),
        engine=ExecutionEngine(commit_every=50),
        config=matching_config,
    )


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, user_id, review_service):
    """Async API client acting as user_id, with an isolated review service."""
    from ledger_import.deps import get_review_service
    from ledger_import.main import app

    app.dependency_overrides[get_review_service] = lambda: review_service
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(
            transport=transport,
            base_url="http://test",
            headers={"X-User-Id": str(user_id)},
        ) as client_instance:
            yield client_instance
    finally:
        app.dependency_overrides.pop(get_review_service, None)
