"""Initial schema: ledger transactions and duplicate exclusions."""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    transaction_source_enum = sa.Enum("manual", "import", "transfer", name="transaction_source_enum")

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, comment="Signed; negative is outflow"),
        sa.Column("currency", sa.String(length=3), nullable=False, comment="ISO currency code"),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.Column("external_id", sa.String(length=200), nullable=True),
        sa.Column("bank_category", sa.String(length=100), nullable=True),
        sa.Column("source", transaction_source_enum, nullable=False),
        sa.Column(
            "linked_transaction_id",
            sa.Integer(),
            sa.ForeignKey("ledger_transactions.id"),
            nullable=True,
            comment="Transfer peer",
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_transactions_user_idempotency_key"),
    )
    op.create_index("ix_ledger_transactions_user_id", "ledger_transactions", ["user_id"])
    op.create_index("ix_ledger_transactions_account_date", "ledger_transactions", ["account_id", "txn_date"])

    op.create_table(
        "duplicate_exclusions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "transaction_keys",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("keys_digest", sa.String(length=64), nullable=False, comment="SHA256 of sorted keys"),
        sa.Column("original_confidence", sa.Numeric(5, 4), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "keys_digest", name="uq_duplicate_exclusions_user_digest"),
    )
    op.create_index("ix_duplicate_exclusions_user_id", "duplicate_exclusions", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_duplicate_exclusions_user_id", table_name="duplicate_exclusions")
    op.drop_table("duplicate_exclusions")
    op.drop_index("ix_ledger_transactions_account_date", table_name="ledger_transactions")
    op.drop_index("ix_ledger_transactions_user_id", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS transaction_source_enum")
