"""SQLAlchemy models package."""

from ledger_import.models.exclusion import DuplicateExclusion
from ledger_import.models.ledger import LedgerTransaction, TransactionSource

__all__ = [
    "DuplicateExclusion",
    "LedgerTransaction",
    "TransactionSource",
]
