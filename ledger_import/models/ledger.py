"""Ledger transaction model."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledger_import.database import Base
from ledger_import.models.base import TimestampMixin, UserOwnedMixin


class TransactionSource(str, Enum):
    """Where a ledger transaction came from."""

    MANUAL = "manual"
    IMPORT = "import"
    TRANSFER = "transfer"


class LedgerTransaction(Base, UserOwnedMixin, TimestampMixin):
    """
    A persisted transaction belonging to one account.

    Rows created by the import engine carry an idempotency key:
    SHA256(account_id|amount|date|normalized description|batch_id). The key is
    unique per user, so a retried import batch never inserts the same row twice.
    Manually entered rows have no key.
    """

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_transactions_user_idempotency_key"),
        Index("ix_ledger_transactions_account_date", "account_id", "txn_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, comment="Signed; negative is outflow")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NZD", comment="ISO currency code")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    bank_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source: Mapped[TransactionSource] = mapped_column(
        SQLEnum(
            TransactionSource,
            name="transaction_source_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=TransactionSource.MANUAL,
    )
    linked_transaction_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ledger_transactions.id"),
        nullable=True,
        comment="Transfer peer",
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.id} {self.txn_date} {self.amount} {self.currency}>"
