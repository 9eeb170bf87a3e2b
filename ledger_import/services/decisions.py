"""In-session decision tracking for a reviewed conflict set.

Every candidate starts Pending. Any decision can be revoked back to Pending until
the execution engine commits. Concurrent writers (two browser tabs) are
last-write-wins per candidate.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum

from ledger_import.services.conflicts import ConflictBucket, ConflictSet


class DecisionType(str, Enum):
    PENDING = "pending"
    IMPORT = "import"
    SKIP = "skip"
    MARK_NOT_DUPLICATE = "mark_not_duplicate"
    MERGE_AS_TRANSFER = "merge_as_transfer"


class InvalidDecisionError(ValueError):
    """Decision is malformed or not applicable to the candidate."""


class UnknownCandidateError(KeyError):
    """Candidate id is not part of the session."""


@dataclass(frozen=True)
class Decision:
    type: DecisionType
    target_ledger_id: int | None = None
    note: str | None = None

    def __post_init__(self) -> None:
        if self.type == DecisionType.MERGE_AS_TRANSFER and self.target_ledger_id is None:
            raise InvalidDecisionError("merge_as_transfer requires target_ledger_id")
        if self.type != DecisionType.MERGE_AS_TRANSFER and self.target_ledger_id is not None:
            raise InvalidDecisionError("target_ledger_id is only valid for merge_as_transfer")

    @property
    def is_pending(self) -> bool:
        return self.type == DecisionType.PENDING

    @classmethod
    def import_(cls, note: str | None = None) -> Decision:
        return cls(DecisionType.IMPORT, note=note)

    @classmethod
    def skip(cls, note: str | None = None) -> Decision:
        return cls(DecisionType.SKIP, note=note)

    @classmethod
    def mark_not_duplicate(cls, note: str | None = None) -> Decision:
        return cls(DecisionType.MARK_NOT_DUPLICATE, note=note)

    @classmethod
    def merge_as_transfer(cls, target_ledger_id: int, note: str | None = None) -> Decision:
        return cls(DecisionType.MERGE_AS_TRANSFER, target_ledger_id=target_ledger_id, note=note)


PENDING = Decision(DecisionType.PENDING)


@dataclass(frozen=True)
class Progress:
    decided: int
    total: int
    percent_reviewed: float


class DecisionTracker:
    """Map from candidate id to decision for one review session."""

    def __init__(self, conflict_set: ConflictSet) -> None:
        self._lock = threading.Lock()
        self._conflict_set = conflict_set
        self._decisions: dict[int, Decision] = {cid: PENDING for cid in conflict_set.candidate_ids}

    @property
    def conflict_set(self) -> ConflictSet:
        return self._conflict_set

    def _require(self, candidate_id: int) -> None:
        if candidate_id not in self._decisions:
            raise UnknownCandidateError(candidate_id)

    def get(self, candidate_id: int) -> Decision:
        with self._lock:
            self._require(candidate_id)
            return self._decisions[candidate_id]

    def set_decision(self, candidate_id: int, decision: Decision) -> bool:
        """Record a decision. Returns False when it was already in place."""
        with self._lock:
            self._require(candidate_id)
            if decision.type == DecisionType.MARK_NOT_DUPLICATE:
                if not self._conflict_set.result(candidate_id).matches:
                    raise InvalidDecisionError(f"candidate {candidate_id} has no match to dismiss")
            if self._decisions[candidate_id] == decision:
                return False
            self._decisions[candidate_id] = decision
            return True

    def clear_decision(self, candidate_id: int) -> bool:
        return self.set_decision(candidate_id, PENDING)

    def bulk_apply(self, bucket: ConflictBucket, decision: Decision) -> int:
        """Apply a decision to every currently pending candidate in a bucket.

        Decisions a user made individually are never overwritten.
        """
        if decision.is_pending:
            raise InvalidDecisionError("use clear_all to reset decisions")
        if decision.type == DecisionType.MERGE_AS_TRANSFER:
            raise InvalidDecisionError("merge_as_transfer cannot be bulk applied")
        if decision.type == DecisionType.MARK_NOT_DUPLICATE and bucket not in (
            ConflictBucket.EXACT_DUPLICATES,
            ConflictBucket.FUZZY_MATCHES,
        ):
            raise InvalidDecisionError("mark_not_duplicate only applies to matched buckets")

        applied = 0
        with self._lock:
            for candidate_id in self._conflict_set.group(bucket).candidate_ids:
                if self._decisions[candidate_id].is_pending:
                    self._decisions[candidate_id] = decision
                    applied += 1
        return applied

    def auto_resolve(self, high_confidence: float = 0.85) -> int:
        """Exact duplicates are skipped, clean rows imported and strong fuzzy matches imported.

        Everything else stays pending for manual review.
        """
        applied = self.bulk_apply(ConflictBucket.EXACT_DUPLICATES, Decision.skip())
        applied += self.bulk_apply(ConflictBucket.READY_TO_IMPORT, Decision.import_())
        with self._lock:
            for item in self._conflict_set.group(ConflictBucket.FUZZY_MATCHES).items:
                if item.confidence >= high_confidence and self._decisions[item.candidate_id].is_pending:
                    self._decisions[item.candidate_id] = Decision.import_()
                    applied += 1
        return applied

    def clear_all(self) -> int:
        with self._lock:
            cleared = sum(1 for decision in self._decisions.values() if not decision.is_pending)
            self._decisions = {cid: PENDING for cid in self._decisions}
        return cleared

    def progress(self) -> Progress:
        with self._lock:
            total = len(self._decisions)
            decided = sum(1 for decision in self._decisions.values() if not decision.is_pending)
        percent = round(decided / total * 100, 1) if total else 0.0
        return Progress(decided=decided, total=total, percent_reviewed=percent)

    def counts(self) -> dict[DecisionType, int]:
        counts = {decision_type: 0 for decision_type in DecisionType}
        with self._lock:
            for decision in self._decisions.values():
                counts[decision.type] += 1
        return counts

    def pending_ids(self) -> list[int]:
        with self._lock:
            return [cid for cid, decision in self._decisions.items() if decision.is_pending]

    def snapshot(self) -> dict[int, Decision]:
        with self._lock:
            return dict(self._decisions)

    def rebind(self, conflict_set: ConflictSet) -> None:
        """Swap in a rebuilt conflict set, keeping decisions for candidates still present.

        A mark_not_duplicate decision survives only while its candidate still has a
        match or an exclusion that already dismissed it; otherwise it goes back to pending.
        """
        with self._lock:
            previous = self._decisions
            self._conflict_set = conflict_set
            decisions: dict[int, Decision] = {}
            for cid in conflict_set.candidate_ids:
                decision = previous.get(cid, PENDING)
                if decision.type == DecisionType.MARK_NOT_DUPLICATE:
                    result = conflict_set.result(cid)
                    if not result.matches and not result.exclusion_ids:
                        decision = PENDING
                decisions[cid] = decision
            self._decisions = decisions
