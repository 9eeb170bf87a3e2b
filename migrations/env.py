"""Alembic environment for the ledger import schema."""

import asyncio

import structlog
from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

import ledger_import.models  # noqa: F401  # registers tables on Base.metadata
from ledger_import.config import settings
from ledger_import.database import Base
from ledger_import.logger import configure_logging, get_logger

config = context.config
if not structlog.is_configured():
    configure_logging()
logger = get_logger("migrations")

if not config.get_main_option("sqlalchemy.url"):
    # configparser interpolation treats % as a marker
    config.set_main_option("sqlalchemy.url", settings.database_url.replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    logger.info("Running migrations", dialect=config.get_main_option("sqlalchemy.url").split(":", 1)[0])
    asyncio.run(run_async_migrations())
