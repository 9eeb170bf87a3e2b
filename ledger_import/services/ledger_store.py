"""Ledger store access used by the import engine."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.logger import get_logger
from ledger_import.models import LedgerTransaction, TransactionSource
from ledger_import.services.normalizer import NormalizedRecord

logger = get_logger(__name__)


def idempotency_key(
    account_id: int,
    record: NormalizedRecord,
    batch_id: str,
    occurrence: int = 0,
) -> str:
    """Content-derived key for a created ledger row.

    Hash = SHA256(account_id|amount|date|description|batch_id[|occurrence])
    occurrence separates identical candidates inside one batch (two equal coffees on one day).
    """
    components = [
        str(account_id),
        str(record.amount),
        record.txn_date.isoformat(),
        record.description,
        batch_id,
    ]
    if occurrence:
        components.append(str(occurrence))
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


async def fetch_existing_pool(
    db: AsyncSession,
    user_id: UUID,
    account_id: int,
    start: date,
    end: date,
) -> list[LedgerTransaction]:
    """Live ledger rows of one account inside an inclusive date window."""
    result = await db.execute(
        select(LedgerTransaction)
        .where(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.account_id == account_id,
            LedgerTransaction.is_deleted.is_(False),
            LedgerTransaction.txn_date >= start,
            LedgerTransaction.txn_date <= end,
        )
        .order_by(LedgerTransaction.txn_date, LedgerTransaction.id)
    )
    return list(result.scalars().all())


async def fetch_live_transactions(
    db: AsyncSession,
    user_id: UUID,
    account_id: int | None = None,
) -> list[LedgerTransaction]:
    """Every live ledger row of a user, optionally limited to one account."""
    query = select(LedgerTransaction).where(
        LedgerTransaction.user_id == user_id,
        LedgerTransaction.is_deleted.is_(False),
    )
    if account_id is not None:
        query = query.where(LedgerTransaction.account_id == account_id)
    result = await db.execute(query.order_by(LedgerTransaction.txn_date, LedgerTransaction.id))
    return list(result.scalars().all())


async def get_transactions_by_ids(
    db: AsyncSession,
    user_id: UUID,
    transaction_ids: Sequence[int],
) -> dict[int, LedgerTransaction]:
    """Rows owned by user_id among transaction_ids, keyed by id. Deleted rows are included."""
    if not transaction_ids:
        return {}
    result = await db.execute(
        select(LedgerTransaction).where(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.id.in_(transaction_ids),
        )
    )
    return {row.id: row for row in result.scalars().all()}


async def get_transaction(db: AsyncSession, user_id: UUID, transaction_id: int) -> LedgerTransaction | None:
    result = await db.execute(
        select(LedgerTransaction).where(
            LedgerTransaction.id == transaction_id,
            LedgerTransaction.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def find_by_idempotency_key(db: AsyncSession, user_id: UUID, key: str) -> LedgerTransaction | None:
    result = await db.execute(
        select(LedgerTransaction).where(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.idempotency_key == key,
        )
    )
    return result.scalar_one_or_none()


async def create_keyed_transaction(
    db: AsyncSession,
    *,
    user_id: UUID,
    account_id: int,
    record: NormalizedRecord,
    key: str,
    source: TransactionSource = TransactionSource.IMPORT,
    linked_transaction_id: int | None = None,
) -> tuple[LedgerTransaction, bool]:
    """Create a ledger row unless one with the same idempotency key exists.

    Returns (row, created). The insert runs in a savepoint so the unique
    constraint decides races between concurrent executions of one batch.
    """
    existing = await find_by_idempotency_key(db, user_id, key)
    if existing is not None:
        return existing, False

    txn = LedgerTransaction(
        user_id=user_id,
        account_id=account_id,
        txn_date=record.txn_date,
        amount=record.amount,
        currency=record.currency,
        description=record.raw_description or record.description,
        reference=record.reference,
        external_id=record.external_id,
        bank_category=record.bank_category,
        source=source,
        linked_transaction_id=linked_transaction_id,
        idempotency_key=key,
    )
    try:
        async with db.begin_nested():
            db.add(txn)
            await db.flush()
    except IntegrityError:
        existing = await find_by_idempotency_key(db, user_id, key)
        if existing is None:
            raise
        logger.info("Idempotency key already used", transaction_id=existing.id, idempotency_key=key)
        return existing, False

    return txn, True
