"""Conflict set builder: classifies a candidate batch and partitions it into review buckets."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum

from ledger_import.config import settings
from ledger_import.logger import get_logger, log_timing
from ledger_import.services.exclusions import ExclusionIndex
from ledger_import.services.matching import (
    LedgerRecord,
    MatchClassification,
    MatchingConfig,
    MatchResult,
    classify,
    load_matching_config,
)
from ledger_import.services.normalizer import CandidateTransaction

logger = get_logger(__name__)

LARGE_AMOUNT_THRESHOLD = Decimal("100000")
STALE_AFTER_DAYS = 5 * 365


class ConflictBucket(str, Enum):
    EXACT_DUPLICATES = "exact_duplicates"
    FUZZY_MATCHES = "fuzzy_matches"
    READY_TO_IMPORT = "ready_to_import"
    UNMATCHED_BANK = "unmatched_bank"
    UNMATCHED_SYSTEM = "unmatched_system"


# Buckets that hold candidates; unmatched_system holds ledger rows
CANDIDATE_BUCKETS = (
    ConflictBucket.EXACT_DUPLICATES,
    ConflictBucket.FUZZY_MATCHES,
    ConflictBucket.READY_TO_IMPORT,
    ConflictBucket.UNMATCHED_BANK,
)


class ReviewMode(str, Enum):
    """IMPORT reviews an upload or sync; RECONCILIATION compares a statement against the ledger."""

    IMPORT = "import"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class BatchWarning:
    code: str
    message: str
    candidate_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class ConflictGroup:
    bucket: ConflictBucket
    items: tuple[MatchResult, ...] = ()

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def candidate_ids(self) -> tuple[int, ...]:
        return tuple(item.candidate_id for item in self.items)


@dataclass(frozen=True)
class ConflictStatistics:
    total: int
    exact_duplicates: int
    fuzzy_matches: int
    ready_to_import: int
    unmatched_bank: int
    unmatched_system: int
    invalid: int
    warnings: int
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class ConflictSet:
    """Reviewable output of one build. Every candidate sits in exactly one candidate bucket."""

    account_id: int
    mode: ReviewMode
    results: tuple[MatchResult, ...]
    groups: dict[ConflictBucket, ConflictGroup]
    unmatched_system: tuple[LedgerRecord, ...]
    statistics: ConflictStatistics
    warnings: tuple[BatchWarning, ...] = ()
    placement: dict[int, ConflictBucket] = field(default_factory=dict)

    @property
    def candidate_ids(self) -> tuple[int, ...]:
        return tuple(result.candidate_id for result in self.results)

    def group(self, bucket: ConflictBucket) -> ConflictGroup:
        return self.groups.get(bucket, ConflictGroup(bucket))

    def bucket_of(self, candidate_id: int) -> ConflictBucket:
        return self.placement[candidate_id]

    def result(self, candidate_id: int) -> MatchResult:
        return self.results[candidate_id]


def bucket_for(result: MatchResult, mode: ReviewMode) -> ConflictBucket:
    if result.classification == MatchClassification.EXACT_DUPLICATE:
        return ConflictBucket.EXACT_DUPLICATES
    if result.classification == MatchClassification.FUZZY_MATCH:
        return ConflictBucket.FUZZY_MATCHES
    if not result.is_valid or mode == ReviewMode.RECONCILIATION:
        return ConflictBucket.UNMATCHED_BANK
    return ConflictBucket.READY_TO_IMPORT


def _classify_all(
    candidates: Sequence[CandidateTransaction],
    pool: tuple[LedgerRecord, ...],
    exclusions: ExclusionIndex,
    config: MatchingConfig,
    account_id: int,
    max_workers: int,
) -> list[MatchResult]:
    def run(indexed: tuple[int, CandidateTransaction]) -> MatchResult:
        index, candidate = indexed
        return classify(candidate, pool, exclusions, config, account_id=account_id, candidate_id=index)

    if max_workers <= 1 or len(candidates) < 2:
        return [run(item) for item in enumerate(candidates)]

    # map() yields in submission order, so placement stays deterministic
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="classify") as executor:
        return list(executor.map(run, enumerate(candidates)))


def _unmatched_system(
    pool: tuple[LedgerRecord, ...],
    results: Sequence[MatchResult],
) -> tuple[LedgerRecord, ...]:
    dates = [result.record.txn_date for result in results if result.record is not None]
    if not dates:
        return ()
    start, end = min(dates), max(dates)
    chosen = {result.best_match_id for result in results if result.best_match_id is not None}

    seen: set[int] = set()
    rows: list[LedgerRecord] = []
    for record in pool:
        if record.is_deleted or record.id in chosen or record.id in seen:
            continue
        if start <= record.txn_date <= end:
            seen.add(record.id)
            rows.append(record)
    rows.sort(key=lambda record: (record.txn_date, record.id))
    return tuple(rows)


def _batch_warnings(results: Sequence[MatchResult], today: date) -> list[BatchWarning]:
    warnings: list[BatchWarning] = []
    valid = [result for result in results if result.record is not None]

    external_ids = Counter(result.record.external_id for result in valid if result.record.external_id)
    duplicated = {value for value, count in external_ids.items() if count > 1}
    if duplicated:
        ids = tuple(result.candidate_id for result in valid if result.record.external_id in duplicated)
        warnings.append(
            BatchWarning("duplicate_external_id", f"{len(duplicated)} external id(s) repeated within the batch", ids)
        )

    checks = (
        ("missing_description", "Transactions without a description", lambda r: not r.description),
        (
            "large_amount",
            f"Transactions over {LARGE_AMOUNT_THRESHOLD:,}",
            lambda r: abs(r.amount) > LARGE_AMOUNT_THRESHOLD,
        ),
        ("future_date", "Transactions dated in the future", lambda r: r.txn_date > today),
        (
            "stale_date",
            "Transactions older than five years",
            lambda r: r.txn_date < today - timedelta(days=STALE_AFTER_DAYS),
        ),
    )
    for code, message, predicate in checks:
        ids = tuple(result.candidate_id for result in valid if predicate(result.record))
        if ids:
            warnings.append(BatchWarning(code, f"{message}: {len(ids)}", ids))
    return warnings


def build_conflict_set(
    candidates: Sequence[CandidateTransaction],
    existing_pool: Sequence[LedgerRecord],
    exclusions: ExclusionIndex | None = None,
    *,
    account_id: int,
    config: MatchingConfig | None = None,
    mode: ReviewMode = ReviewMode.IMPORT,
    max_workers: int | None = None,
    today: date | None = None,
) -> ConflictSet:
    """Classify every candidate and partition the batch into review buckets.

    Candidate ids are batch indexes. Rebuilding always re-runs the whole batch.
    """
    config = config or load_matching_config()
    exclusions = exclusions or ExclusionIndex()
    workers = max_workers if max_workers is not None else settings.classification_workers
    pool = tuple(existing_pool)

    with log_timing(
        "build_conflict_set",
        logger=logger,
        account_id=account_id,
        candidates=len(candidates),
        pool=len(pool),
        mode=mode.value,
    ) as timing:
        results = _classify_all(candidates, pool, exclusions, config, account_id, workers)

        grouped: dict[ConflictBucket, list[MatchResult]] = {bucket: [] for bucket in CANDIDATE_BUCKETS}
        placement: dict[int, ConflictBucket] = {}
        for result in results:
            bucket = bucket_for(result, mode)
            grouped[bucket].append(result)
            placement[result.candidate_id] = bucket
        groups = {bucket: ConflictGroup(bucket, tuple(items)) for bucket, items in grouped.items()}

        unmatched_system = _unmatched_system(pool, results)
        batch_warnings = _batch_warnings(results, today or date.today())

        dates = [result.record.txn_date for result in results if result.record is not None]
        statistics = ConflictStatistics(
            total=len(results),
            exact_duplicates=groups[ConflictBucket.EXACT_DUPLICATES].count,
            fuzzy_matches=groups[ConflictBucket.FUZZY_MATCHES].count,
            ready_to_import=groups[ConflictBucket.READY_TO_IMPORT].count,
            unmatched_bank=groups[ConflictBucket.UNMATCHED_BANK].count,
            unmatched_system=len(unmatched_system),
            invalid=sum(1 for result in results if not result.is_valid),
            warnings=len(batch_warnings) + sum(len(result.warnings) for result in results),
            date_from=min(dates) if dates else None,
            date_to=max(dates) if dates else None,
        )
        timing["exact_duplicates"] = statistics.exact_duplicates
        timing["fuzzy_matches"] = statistics.fuzzy_matches
        timing["ready_to_import"] = statistics.ready_to_import

    return ConflictSet(
        account_id=account_id,
        mode=mode,
        results=tuple(results),
        groups=groups,
        unmatched_system=unmatched_system,
        statistics=statistics,
        warnings=tuple(batch_warnings),
        placement=placement,
    )
