"""Tests for keyed ledger inserts."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ledger_import.models import LedgerTransaction, TransactionSource
from ledger_import.services import ledger_store
from ledger_import.services.ledger_store import create_keyed_transaction
from ledger_import.services.normalizer import CandidateTransaction, normalize
from tests.factories import LedgerTransactionFactory

KEY = "a" * 64


def _record():
    return normalize(CandidateTransaction(amount="-12.00", txn_date="2024-01-02", description="Bakery"))


async def _rows_with_key(db, user_id):
    result = await db.execute(
        select(func.count())
        .select_from(LedgerTransaction)
        .where(LedgerTransaction.user_id == user_id, LedgerTransaction.idempotency_key == KEY)
    )
    return result.scalar_one()


def _lookup_misses(monkeypatch, misses):
    """Make the pre-insert lookup miss, as when another writer commits in between."""
    real_lookup = ledger_store.find_by_idempotency_key
    calls = []

    async def lookup(db, user_id, key):
        calls.append(key)
        if len(calls) <= misses:
            return None
        return await real_lookup(db, user_id, key)

    monkeypatch.setattr(ledger_store, "find_by_idempotency_key", lookup)
    return calls


@pytest.mark.asyncio
async def test_existing_key_returns_existing_row(db, user_id):
    first, created = await create_keyed_transaction(db, user_id=user_id, account_id=1, record=_record(), key=KEY)
    second, created_again = await create_keyed_transaction(
        db, user_id=user_id, account_id=1, record=_record(), key=KEY
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.source == TransactionSource.IMPORT


@pytest.mark.asyncio
async def test_unique_violation_resolves_to_concurrent_row(db, user_id, monkeypatch):
    """
    GIVEN a keyed row committed after the pre-insert lookup ran
    WHEN the insert hits the unique constraint
    THEN the existing row is returned and no second row is written
    """
    winner = await LedgerTransactionFactory.create_async(
        db,
        user_id=user_id,
        amount=Decimal("-12.00"),
        txn_date=date(2024, 1, 2),
        description="Bakery",
        source=TransactionSource.IMPORT,
        idempotency_key=KEY,
    )
    await db.commit()
    calls = _lookup_misses(monkeypatch, misses=1)

    row, created = await create_keyed_transaction(db, user_id=user_id, account_id=1, record=_record(), key=KEY)

    assert created is False
    assert row.id == winner.id
    assert len(calls) == 2
    assert await _rows_with_key(db, user_id) == 1


@pytest.mark.asyncio
async def test_unresolvable_violation_is_raised(db, user_id, monkeypatch):
    await LedgerTransactionFactory.create_async(db, user_id=user_id, idempotency_key=KEY)
    await db.commit()
    _lookup_misses(monkeypatch, misses=2)

    with pytest.raises(IntegrityError):
        await create_keyed_transaction(db, user_id=user_id, account_id=1, record=_record(), key=KEY)

    assert await _rows_with_key(db, user_id) == 1
