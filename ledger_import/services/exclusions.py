"""Duplicate exclusion registry.

An exclusion records that a set of transactions was judged by a user not to be
duplicates of each other. The classifier consults an in-memory ExclusionIndex
snapshot so a dismissed pairing never resurfaces as a conflict.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.logger import get_logger
from ledger_import.models import DuplicateExclusion

logger = get_logger(__name__)

LEDGER_KEY_PREFIX = "ledger:"
CANDIDATE_KEY_PREFIX = "candidate:"


def ledger_key(ledger_id: int) -> str:
    return f"{LEDGER_KEY_PREFIX}{ledger_id}"


def candidate_key(fingerprint: str) -> str:
    return f"{CANDIDATE_KEY_PREFIX}{fingerprint}"


def keys_digest(keys: Iterable[str]) -> str:
    """Order-independent SHA256 of a key set."""
    canonical = "|".join(sorted(set(keys)))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ExclusionEntry:
    id: int
    keys: frozenset[str]
    original_confidence: Decimal


class ExclusionIndex:
    """Read-only snapshot of a user's exclusions, safe to share across worker threads."""

    def __init__(self, entries: Iterable[ExclusionEntry] = ()) -> None:
        self._entries = tuple(entries)
        by_key: dict[str, list[ExclusionEntry]] = {}
        for entry in self._entries:
            for key in entry.keys:
                by_key.setdefault(key, []).append(entry)
        self._by_key = {key: tuple(items) for key, items in by_key.items()}

    @classmethod
    def from_models(cls, rows: Iterable[DuplicateExclusion]) -> ExclusionIndex:
        return cls(
            ExclusionEntry(
                id=row.id,
                keys=frozenset(row.transaction_keys or []),
                original_confidence=Decimal(str(row.original_confidence)),
            )
            for row in rows
        )

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[ExclusionEntry, ...]:
        return self._entries

    def covering(self, keys: Iterable[str]) -> tuple[int, ...]:
        """Ids of exclusions whose key set contains every key given."""
        wanted = frozenset(keys)
        if not wanted:
            return ()
        # Any covering exclusion must contain the first key
        anchor = next(iter(wanted))
        return tuple(sorted(entry.id for entry in self._by_key.get(anchor, ()) if wanted <= entry.keys))

    def covers(self, keys: Iterable[str]) -> bool:
        return bool(self.covering(keys))

    def excluded_pair(self, candidate: str, ledger_id: int) -> bool:
        return self.covers((candidate, ledger_key(ledger_id)))


EMPTY_EXCLUSIONS = ExclusionIndex()


async def load_exclusions(db: AsyncSession, user_id: UUID) -> ExclusionIndex:
    """Snapshot all exclusions owned by a user."""
    result = await db.execute(
        select(DuplicateExclusion).where(DuplicateExclusion.user_id == user_id).order_by(DuplicateExclusion.id)
    )
    return ExclusionIndex.from_models(result.scalars().all())


async def _get_by_digest(db: AsyncSession, user_id: UUID, digest: str) -> DuplicateExclusion | None:
    result = await db.execute(
        select(DuplicateExclusion).where(
            DuplicateExclusion.user_id == user_id,
            DuplicateExclusion.keys_digest == digest,
        )
    )
    return result.scalar_one_or_none()


async def create_exclusion(
    db: AsyncSession,
    user_id: UUID,
    keys: Iterable[str],
    original_confidence: Decimal | float,
    notes: str | None = None,
) -> tuple[DuplicateExclusion, bool]:
    """Persist an exclusion over a key set.

    Idempotent per (user_id, key set): returns the existing row and False when the
    same set was already excluded. The insert runs in a savepoint so a concurrent
    writer hitting the unique constraint resolves to the row it created.
    """
    key_set = sorted(set(keys))
    if len(key_set) < 2:
        raise ValueError("An exclusion needs at least two transaction keys")

    digest = keys_digest(key_set)
    existing = await _get_by_digest(db, user_id, digest)
    if existing is not None:
        return existing, False

    confidence = Decimal(str(original_confidence)).quantize(Decimal("0.0001"))
    exclusion = DuplicateExclusion(
        user_id=user_id,
        transaction_keys=key_set,
        keys_digest=digest,
        original_confidence=min(max(confidence, Decimal("0")), Decimal("1")),
        notes=notes,
    )
    try:
        async with db.begin_nested():
            db.add(exclusion)
            await db.flush()
    except IntegrityError:
        existing = await _get_by_digest(db, user_id, digest)
        if existing is None:
            raise
        logger.info("Exclusion already recorded by a concurrent writer", exclusion_id=existing.id)
        return existing, False

    logger.info(
        "Duplicate exclusion created",
        exclusion_id=exclusion.id,
        user_id=str(user_id),
        keys=len(key_set),
    )
    return exclusion, True
