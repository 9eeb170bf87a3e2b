"""Alembic revision graph and schema tests."""

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect

from ledger_import.models import DuplicateExclusion, LedgerTransaction

ROOT_DIR = Path(__file__).parent.parent
ALEMBIC_INI_PATH = ROOT_DIR / "alembic.ini"
SCRIPT_LOCATION = ROOT_DIR / "migrations"


@pytest.fixture
def alembic_config():
    if not ALEMBIC_INI_PATH.exists():
        pytest.fail(f"alembic.ini not found at {ALEMBIC_INI_PATH}")
    config = Config(str(ALEMBIC_INI_PATH))
    config.set_main_option("script_location", str(SCRIPT_LOCATION))
    return config


def test_single_head(alembic_config):
    heads = ScriptDirectory.from_config(alembic_config).get_heads()
    assert len(heads) == 1, f"Migration graph has multiple heads: {heads}"


def test_revision_ids_fit_version_table(alembic_config):
    for script in ScriptDirectory.from_config(alembic_config).walk_revisions("base", "heads"):
        assert len(script.revision) <= 32, script.revision


def test_upgrade_creates_model_schema(alembic_config, tmp_path):
    """
    GIVEN an empty database
    WHEN migrations are applied to head
    THEN every mapped table exists with its columns and unique constraints
    """
    db_path = tmp_path / "schema.db"
    alembic_config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")

    command.upgrade(alembic_config, "head")

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        inspector = inspect(engine)
        for table in (LedgerTransaction.__table__, DuplicateExclusion.__table__):
            columns = {column["name"] for column in inspector.get_columns(table.name)}
            assert columns == {column.name for column in table.columns}, table.name

        ledger_unique = {tuple(c["column_names"]) for c in inspector.get_unique_constraints("ledger_transactions")}
        exclusion_unique = {tuple(c["column_names"]) for c in inspector.get_unique_constraints("duplicate_exclusions")}
        assert ("user_id", "idempotency_key") in ledger_unique
        assert ("user_id", "keys_digest") in exclusion_unique
    finally:
        engine.dispose()

    command.downgrade(alembic_config, "base")

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    finally:
        engine.dispose()
