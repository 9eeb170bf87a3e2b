"""Tests for the in-session decision tracker."""

from datetime import date
from decimal import Decimal

import pytest

from ledger_import.services.conflicts import ConflictBucket, build_conflict_set
from ledger_import.services.decisions import (
    PENDING,
    Decision,
    DecisionTracker,
    DecisionType,
    InvalidDecisionError,
    UnknownCandidateError,
)
from ledger_import.services.normalizer import CandidateTransaction
from tests.factories import CandidateFactory, LedgerRecordFactory

TODAY = date(2024, 2, 1)


@pytest.fixture
def ready_tracker(matching_config):
    candidates = [CandidateFactory.build(amount=f"-{i + 1}.00") for i in range(8)]
    conflict_set = build_conflict_set(
        candidates, [], account_id=1, config=matching_config, max_workers=1, today=TODAY
    )
    return DecisionTracker(conflict_set)


@pytest.fixture
def mixed_tracker(matching_config):
    pool = [
        LedgerRecordFactory.build(
            id=1, amount=Decimal("-25.50"), txn_date=date(2024, 1, 1), raw_description="Coffee Shop Purchase"
        ),
        LedgerRecordFactory.build(
            id=2, amount=Decimal("-40.00"), txn_date=date(2024, 1, 2), raw_description="Gym Membership"
        ),
    ]
    candidates = [
        CandidateTransaction(amount="-25.50", txn_date="2024-01-01", description="Coffee Shop Purchase"),
        CandidateTransaction(amount="-25.50", txn_date="2024-01-02", description="Coffee Shop"),
        CandidateTransaction(amount="-40.00", txn_date="2024-01-02", description="Gym Membership Fee"),
        CandidateTransaction(amount="-99.00", txn_date="2024-01-03", description="Hardware"),
    ]
    conflict_set = build_conflict_set(
        candidates, pool, account_id=1, config=matching_config, max_workers=1, today=TODAY
    )
    return DecisionTracker(conflict_set)


def test_every_candidate_starts_pending(ready_tracker):
    assert ready_tracker.pending_ids() == list(range(8))
    assert ready_tracker.progress().percent_reviewed == 0.0
    assert ready_tracker.get(0) == PENDING


def test_bulk_apply_never_overwrites_individual_decisions(ready_tracker):
    """
    GIVEN 8 ready-to-import candidates, 3 decided individually (2 import, 1 skip)
    WHEN import is bulk applied to the ready-to-import bucket
    THEN only the 5 pending items change, giving 7 imports and 1 skip
    """
    ready_tracker.set_decision(0, Decision.import_())
    ready_tracker.set_decision(1, Decision.import_())
    ready_tracker.set_decision(2, Decision.skip())

    applied = ready_tracker.bulk_apply(ConflictBucket.READY_TO_IMPORT, Decision.import_())

    counts = ready_tracker.counts()
    assert applied == 5
    assert counts[DecisionType.IMPORT] == 7
    assert counts[DecisionType.SKIP] == 1
    assert counts[DecisionType.PENDING] == 0
    assert ready_tracker.get(2).type == DecisionType.SKIP


def test_progress_and_clear_all(ready_tracker):
    ready_tracker.set_decision(0, Decision.import_())
    ready_tracker.set_decision(1, Decision.skip())
    ready_tracker.set_decision(2, Decision.skip())

    progress = ready_tracker.progress()
    assert progress.decided == 3
    assert progress.total == 8
    assert progress.percent_reviewed == 37.5

    assert ready_tracker.clear_all() == 3
    assert ready_tracker.progress().percent_reviewed == 0.0
    assert len(ready_tracker.pending_ids()) == 8


def test_decision_can_be_revoked(ready_tracker):
    assert ready_tracker.set_decision(4, Decision.skip()) is True
    assert ready_tracker.set_decision(4, Decision.skip()) is False
    assert ready_tracker.clear_decision(4) is True
    assert ready_tracker.get(4).is_pending


def test_last_write_wins(ready_tracker):
    ready_tracker.set_decision(3, Decision.import_())
    ready_tracker.set_decision(3, Decision.skip(note="second tab"))

    decision = ready_tracker.get(3)
    assert decision.type == DecisionType.SKIP
    assert decision.note == "second tab"


def test_unknown_candidate(ready_tracker):
    with pytest.raises(UnknownCandidateError):
        ready_tracker.set_decision(99, Decision.import_())
    with pytest.raises(UnknownCandidateError):
        ready_tracker.get(-1)


class TestDecisionValidation:
    def test_merge_requires_target(self):
        with pytest.raises(InvalidDecisionError):
            Decision(DecisionType.MERGE_AS_TRANSFER)

    def test_target_only_for_merge(self):
        with pytest.raises(InvalidDecisionError):
            Decision(DecisionType.IMPORT, target_ledger_id=5)

    def test_mark_not_duplicate_needs_a_match(self, mixed_tracker):
        with pytest.raises(InvalidDecisionError):
            mixed_tracker.set_decision(3, Decision.mark_not_duplicate())
        assert mixed_tracker.set_decision(0, Decision.mark_not_duplicate()) is True

    def test_bulk_rejects_pending_and_merge(self, ready_tracker):
        with pytest.raises(InvalidDecisionError):
            ready_tracker.bulk_apply(ConflictBucket.READY_TO_IMPORT, PENDING)
        with pytest.raises(InvalidDecisionError):
            ready_tracker.bulk_apply(ConflictBucket.READY_TO_IMPORT, Decision.merge_as_transfer(1))
        with pytest.raises(InvalidDecisionError):
            ready_tracker.bulk_apply(ConflictBucket.READY_TO_IMPORT, Decision.mark_not_duplicate())


def test_bulk_apply_only_touches_its_bucket(mixed_tracker):
    applied = mixed_tracker.bulk_apply(ConflictBucket.EXACT_DUPLICATES, Decision.skip())

    assert applied == 1
    assert mixed_tracker.get(0).type == DecisionType.SKIP
    assert mixed_tracker.pending_ids() == [1, 2, 3]


def test_auto_resolve(mixed_tracker):
    """
    GIVEN an exact duplicate, a strong fuzzy match, a weak fuzzy match and a clean row
    WHEN auto resolve runs
    THEN the duplicate is skipped, the strong match and clean row imported, the weak match left pending
    """
    conflict_set = mixed_tracker.conflict_set
    assert conflict_set.bucket_of(0) == ConflictBucket.EXACT_DUPLICATES
    assert conflict_set.bucket_of(1) == ConflictBucket.FUZZY_MATCHES
    assert conflict_set.bucket_of(2) == ConflictBucket.FUZZY_MATCHES
    assert conflict_set.result(1).confidence < 0.85 <= conflict_set.result(2).confidence

    applied = mixed_tracker.auto_resolve(0.85)

    assert applied == 3
    assert mixed_tracker.get(0).type == DecisionType.SKIP
    assert mixed_tracker.get(1).is_pending
    assert mixed_tracker.get(2).type == DecisionType.IMPORT
    assert mixed_tracker.get(3).type == DecisionType.IMPORT


def test_rebind_keeps_decisions_for_surviving_candidates(ready_tracker, matching_config):
    ready_tracker.set_decision(0, Decision.skip())
    ready_tracker.set_decision(7, Decision.import_())

    smaller = build_conflict_set(
        [CandidateFactory.build() for _ in range(4)], [], account_id=1, config=matching_config, max_workers=1
    )
    ready_tracker.rebind(smaller)

    assert ready_tracker.get(0).type == DecisionType.SKIP
    assert ready_tracker.progress().total == 4
    with pytest.raises(UnknownCandidateError):
        ready_tracker.get(7)


def test_rebind_drops_dismissal_when_match_disappears(matching_config):
    candidate = CandidateTransaction(amount="-9.00", txn_date="2024-01-02", description="Bakery")
    pool = [
        LedgerRecordFactory.build(id=1, amount=Decimal("-9.00"), txn_date=date(2024, 1, 2), raw_description="Bakery")
    ]

    def build(existing):
        return build_conflict_set(
            [candidate], existing, account_id=1, config=matching_config, max_workers=1, today=TODAY
        )

    tracker = DecisionTracker(build(pool))
    tracker.set_decision(0, Decision.mark_not_duplicate())

    tracker.rebind(build([]))

    assert tracker.get(0) == PENDING
    assert tracker.pending_ids() == [0]
