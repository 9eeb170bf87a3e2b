"""Ledger-wide duplicate detection and resolution.

Scans a user's persisted transactions for rows that look like the same real-world
transaction entered twice, and applies the user's verdict on each group: keep some
rows and soft-delete the rest, or record that the group is not a duplicate so it
never resurfaces.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.logger import async_log_timing, get_logger, log_exception, log_timing
from ledger_import.services.exclusions import ExclusionIndex, create_exclusion, keys_digest, ledger_key, load_exclusions
from ledger_import.services.ledger_store import fetch_live_transactions, get_transactions_by_ids
from ledger_import.services.matching import LedgerRecord, snapshot_pool
from ledger_import.services.similarity import date_delta_days, string_similarity

logger = get_logger(__name__)

# Amounts within this share of each other are near-equal even past the absolute tolerance
RELATIVE_AMOUNT_TOLERANCE = Decimal("0.05")
NOT_DUPLICATE_NOTE = "Marked as not duplicate"


@dataclass(frozen=True)
class DuplicateScanOptions:
    amount_tolerance: Decimal = Decimal("0.01")
    date_tolerance_days: int = 1
    same_account_only: bool = False
    min_confidence: float = 0.5
    account_id: int | None = None


@dataclass(frozen=True)
class DuplicateMember:
    record: LedgerRecord
    confidence: float


@dataclass(frozen=True)
class DuplicateGroup:
    """An anchor row and the rows that look like copies of it, best match first."""

    group_id: str
    anchor: LedgerRecord
    duplicates: tuple[DuplicateMember, ...]

    @property
    def transaction_ids(self) -> tuple[int, ...]:
        return (self.anchor.id, *(member.record.id for member in self.duplicates))

    @property
    def highest_confidence(self) -> float:
        return max(member.confidence for member in self.duplicates)

    @property
    def total_amount(self) -> Decimal:
        return abs(self.anchor.amount)

    @property
    def date_from(self) -> date:
        return min(self.anchor.txn_date, *(member.record.txn_date for member in self.duplicates))

    @property
    def date_to(self) -> date:
        return max(self.anchor.txn_date, *(member.record.txn_date for member in self.duplicates))


@dataclass(frozen=True)
class DuplicateScan:
    groups: tuple[DuplicateGroup, ...]
    processed_at: datetime

    @property
    def total_groups(self) -> int:
        return len(self.groups)

    @property
    def total_transactions(self) -> int:
        return sum(len(group.transaction_ids) for group in self.groups)


def duplicate_confidence(a: LedgerRecord, b: LedgerRecord, options: DuplicateScanOptions) -> float | None:
    """Score a pair of ledger rows, or None when they fail the hard filters.

    Amount 0.4 (0.2 inside the relative band), date 0.3 (0.2 inside the tolerance),
    description up to 0.2, same account 0.1; differing external ids cost 0.3.
    """
    if a.currency != b.currency:
        return None
    days = date_delta_days(a.txn_date, b.txn_date)
    if days > options.date_tolerance_days:
        return None
    difference = abs(a.amount - b.amount)
    relative_band = abs(a.amount) * RELATIVE_AMOUNT_TOLERANCE
    if difference > options.amount_tolerance and difference > relative_band:
        return None

    score = 0.4 if difference <= options.amount_tolerance else 0.2
    score += 0.3 if days == 0 else 0.2

    similarity = string_similarity(a.raw_description or a.description, b.raw_description or b.description)
    if similarity > 0.9:
        score += 0.2
    elif similarity > 0.7:
        score += 0.15
    elif similarity > 0.5:
        score += 0.1

    if a.account_id == b.account_id:
        score += 0.1
    if a.external_id and b.external_id and a.external_id != b.external_id:
        score -= 0.3
    return round(min(max(score, 0.0), 1.0), 4)


def find_ledger_duplicates(
    records: Sequence[LedgerRecord],
    exclusions: ExclusionIndex | None = None,
    options: DuplicateScanOptions | None = None,
) -> tuple[DuplicateGroup, ...]:
    """Group live ledger rows into disjoint duplicate groups.

    Rows are visited oldest first; each unclaimed row anchors a group of the unclaimed
    rows scoring at least min_confidence against it. Pairs covered by an exclusion are
    never grouped. Groups are ordered by highest confidence, then largest amount.
    """
    options = options or DuplicateScanOptions()
    exclusions = exclusions or ExclusionIndex()
    live = sorted(
        (
            record
            for record in records
            if not record.is_deleted and (options.account_id is None or record.account_id == options.account_id)
        ),
        key=lambda record: (record.txn_date, record.id),
    )
    ordinals = [record.txn_date.toordinal() for record in live]

    claimed: set[int] = set()
    groups: list[DuplicateGroup] = []
    with log_timing("find_ledger_duplicates", logger=logger, level="debug", transactions=len(live)) as timing:
        for anchor in live:
            if anchor.id in claimed:
                continue
            day = anchor.txn_date.toordinal()
            lo = bisect_left(ordinals, day - options.date_tolerance_days)
            hi = bisect_right(ordinals, day + options.date_tolerance_days)

            members: list[DuplicateMember] = []
            for other in live[lo:hi]:
                if other.id == anchor.id or other.id in claimed:
                    continue
                if options.same_account_only and other.account_id != anchor.account_id:
                    continue
                confidence = duplicate_confidence(anchor, other, options)
                if confidence is None or confidence < options.min_confidence:
                    continue
                if exclusions.covers((ledger_key(anchor.id), ledger_key(other.id))):
                    continue
                members.append(DuplicateMember(other, confidence))

            if not members:
                continue
            members.sort(key=lambda member: (-member.confidence, member.record.txn_date, member.record.id))
            ids = (anchor.id, *(member.record.id for member in members))
            claimed.update(ids)
            groups.append(
                DuplicateGroup(
                    group_id=keys_digest(ledger_key(lid) for lid in ids),
                    anchor=anchor,
                    duplicates=tuple(members),
                )
            )

        groups.sort(
            key=lambda group: (-group.highest_confidence, -group.total_amount, group.anchor.txn_date, group.anchor.id)
        )
        timing["groups"] = len(groups)
    return tuple(groups)


async def scan_ledger_duplicates(
    db: AsyncSession,
    user_id: UUID,
    options: DuplicateScanOptions | None = None,
) -> DuplicateScan:
    options = options or DuplicateScanOptions()
    rows = await fetch_live_transactions(db, user_id, options.account_id)
    exclusions = await load_exclusions(db, user_id)
    groups = await run_in_threadpool(find_ledger_duplicates, snapshot_pool(rows), exclusions, options)
    logger.info("Ledger duplicate scan finished", user_id=str(user_id), transactions=len(rows), groups=len(groups))
    return DuplicateScan(groups=groups, processed_at=datetime.now(UTC))


@dataclass(frozen=True)
class DuplicateResolution:
    group_id: str
    keep_ids: tuple[int, ...] = ()
    delete_ids: tuple[int, ...] = ()
    mark_not_duplicate: bool = False
    notes: str | None = None

    @property
    def transaction_ids(self) -> list[int]:
        return list(dict.fromkeys((*self.keep_ids, *self.delete_ids)))


@dataclass(frozen=True)
class ResolutionError:
    group_id: str
    message: str


@dataclass
class ResolutionResult:
    deleted: int = 0
    kept: int = 0
    exclusions_created: int = 0
    exclusion_ids: list[int] = field(default_factory=list)
    errors: list[ResolutionError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class ResolutionRejected(ValueError):
    """One group's resolution cannot be applied; other groups still are."""


async def _resolve_one(
    db: AsyncSession,
    user_id: UUID,
    resolution: DuplicateResolution,
    result: ResolutionResult,
) -> None:
    ids = resolution.transaction_ids
    if not ids:
        raise ResolutionRejected("no transactions given")
    overlap = sorted(set(resolution.keep_ids) & set(resolution.delete_ids))
    if overlap:
        raise ResolutionRejected(f"transactions both kept and deleted: {overlap}")

    rows = await get_transactions_by_ids(db, user_id, ids)
    missing = [tid for tid in ids if tid not in rows]
    if missing:
        raise ResolutionRejected(f"transactions not found: {missing}")

    if resolution.mark_not_duplicate:
        if len(ids) < 2:
            raise ResolutionRejected("a not-duplicate verdict needs at least two transactions")
        exclusion, created = await create_exclusion(
            db,
            user_id,
            [ledger_key(tid) for tid in ids],
            Decimal("1.0"),
            notes=resolution.notes or NOT_DUPLICATE_NOTE,
        )
        result.exclusion_ids.append(exclusion.id)
        result.exclusions_created += int(created)
        return

    deleted = 0
    async with db.begin_nested():
        for tid in resolution.delete_ids:
            row = rows[tid]
            if row.is_deleted:
                continue
            row.is_deleted = True
            deleted += 1
        await db.flush()
    result.deleted += deleted
    result.kept += len(resolution.keep_ids)


async def resolve_duplicates(
    db: AsyncSession,
    user_id: UUID,
    resolutions: Sequence[DuplicateResolution],
) -> ResolutionResult:
    """Apply each group's verdict. A failing group is reported and does not stop the others.

    Deleting is a soft delete and is idempotent. A not-duplicate verdict stores an
    exclusion over the group's ledger keys.
    """
    result = ResolutionResult()
    async with async_log_timing("resolve_duplicates", logger=logger, groups=len(resolutions)) as timing:
        for resolution in resolutions:
            try:
                await _resolve_one(db, user_id, resolution, result)
            except ResolutionRejected as exc:
                result.errors.append(ResolutionError(resolution.group_id, str(exc)))
            except SQLAlchemyError as exc:
                log_exception(logger, exc, "Failed to resolve duplicate group", group_id=resolution.group_id)
                result.errors.append(ResolutionError(resolution.group_id, str(exc)))
        await db.commit()
        timing.update(deleted=result.deleted, kept=result.kept, exclusions=result.exclusions_created)
    return result
