"""Tests for the duplicate exclusion registry."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from ledger_import.models import DuplicateExclusion
from ledger_import.services import exclusions
from ledger_import.services.exclusions import (
    ExclusionEntry,
    ExclusionIndex,
    candidate_key,
    create_exclusion,
    keys_digest,
    ledger_key,
    load_exclusions,
)


def test_keys_digest_is_order_independent():
    assert keys_digest(["ledger:1", "candidate:abc"]) == keys_digest(["candidate:abc", "ledger:1", "ledger:1"])
    assert keys_digest(["ledger:1", "ledger:2"]) != keys_digest(["ledger:1", "ledger:3"])


class TestExclusionIndex:
    def test_subset_is_covered(self):
        """
        GIVEN an exclusion over {A, B, C}
        WHEN any subset of two or more of its keys is checked
        THEN the subset is covered by that exclusion
        """
        index = ExclusionIndex([ExclusionEntry(7, frozenset({"ledger:1", "ledger:2", "candidate:x"}), Decimal("0.9"))])

        assert index.covering(["ledger:1", "candidate:x"]) == (7,)
        assert index.covers(["ledger:2", "ledger:1"])
        assert index.excluded_pair("candidate:x", 2)

    def test_superset_is_not_covered(self):
        index = ExclusionIndex([ExclusionEntry(7, frozenset({"ledger:1", "ledger:2"}), Decimal("0.9"))])

        assert not index.covers(["ledger:1", "ledger:2", "ledger:3"])
        assert not index.covers(["ledger:1", "ledger:3"])
        assert index.covering([]) == ()

    def test_multiple_exclusions_reported_sorted(self):
        index = ExclusionIndex(
            [
                ExclusionEntry(9, frozenset({"ledger:1", "ledger:2", "ledger:3"}), Decimal("0.7")),
                ExclusionEntry(4, frozenset({"ledger:1", "ledger:2"}), Decimal("0.8")),
            ]
        )

        assert index.covering(["ledger:2", "ledger:1"]) == (4, 9)
        assert len(index) == 2


@pytest.mark.asyncio
async def test_create_exclusion_is_idempotent(db, user_id):
    keys = [candidate_key("f" * 64), ledger_key(12)]

    first, created = await create_exclusion(db, user_id, keys, 0.9134, notes="different merchants")
    second, created_again = await create_exclusion(db, user_id, list(reversed(keys)), 0.5)
    await db.commit()

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.original_confidence == Decimal("0.9134")
    assert first.transaction_keys == sorted(keys)


@pytest.mark.asyncio
async def test_create_exclusion_resolves_unique_violation_to_existing_row(db, user_id, monkeypatch):
    """
    GIVEN an exclusion committed by another writer after the digest lookup ran
    WHEN the same key set is inserted
    THEN the committed row is returned and the registry still holds one row
    """
    keys = [ledger_key(3), ledger_key(4)]
    winner, _ = await create_exclusion(db, user_id, keys, 0.7)
    await db.commit()

    real_lookup = exclusions._get_by_digest
    calls = []

    async def lookup(session, owner, digest):
        calls.append(digest)
        if len(calls) == 1:
            return None
        return await real_lookup(session, owner, digest)

    monkeypatch.setattr(exclusions, "_get_by_digest", lookup)

    row, created = await create_exclusion(db, user_id, keys, 0.9)

    assert created is False
    assert row.id == winner.id
    assert len(calls) == 2
    count = await db.scalar(
        select(func.count()).select_from(DuplicateExclusion).where(DuplicateExclusion.user_id == user_id)
    )
    assert count == 1


@pytest.mark.asyncio
async def test_create_exclusion_needs_two_keys(db, user_id):
    with pytest.raises(ValueError, match="at least two"):
        await create_exclusion(db, user_id, [ledger_key(1), ledger_key(1)], 1.0)


@pytest.mark.asyncio
async def test_load_exclusions_is_scoped_to_user(db, user_id):
    other_user = uuid4()
    mine, _ = await create_exclusion(db, user_id, [ledger_key(1), ledger_key(2)], 0.8)
    await create_exclusion(db, other_user, [ledger_key(3), ledger_key(4)], 0.8)
    await db.commit()

    index = await load_exclusions(db, user_id)

    assert [entry.id for entry in index.entries] == [mine.id]
    assert index.covers([ledger_key(1), ledger_key(2)])
    assert not index.covers([ledger_key(3), ledger_key(4)])


@pytest.mark.asyncio
async def test_same_keys_for_different_users_are_independent(db, user_id):
    keys = [ledger_key(1), ledger_key(2)]
    mine, created_mine = await create_exclusion(db, user_id, keys, 0.8)
    theirs, created_theirs = await create_exclusion(db, uuid4(), keys, 0.8)
    await db.commit()

    assert created_mine and created_theirs
    assert mine.id != theirs.id
