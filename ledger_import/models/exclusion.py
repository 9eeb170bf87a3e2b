"""Duplicate exclusion model."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_import.database import Base
from ledger_import.models.base import PortableJSON, UserOwnedMixin


class DuplicateExclusion(Base, UserOwnedMixin):
    """
    A set of transactions a user judged not to be duplicates of each other.

    transaction_keys holds stable keys rather than raw ids because a not-yet-imported
    candidate has no database id:
    - "ledger:<id>" for persisted ledger transactions
    - "candidate:<fingerprint>" for import candidates

    Exclusions are never deleted by the import engine.
    """

    __tablename__ = "duplicate_exclusions"
    __table_args__ = (UniqueConstraint("user_id", "keys_digest", name="uq_duplicate_exclusions_user_digest"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_keys: Mapped[list[str]] = mapped_column(PortableJSON, nullable=False, default=list)
    keys_digest: Mapped[str] = mapped_column(String(64), nullable=False, comment="SHA256 of sorted keys")
    original_confidence: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=Decimal("1.0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    def __repr__(self) -> str:
        return f"<DuplicateExclusion {self.id} keys={len(self.transaction_keys or [])}>"
