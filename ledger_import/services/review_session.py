"""Server-side review sessions for the import workflow.

A session holds one candidate batch, its conflict set and the decision tracker for
the duration of one review. Sessions live in memory, are scoped to their owner
and expire after a configurable idle time.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.config import settings
from ledger_import.logger import get_logger
from ledger_import.services.conflicts import ConflictBucket, ConflictSet, ReviewMode, build_conflict_set
from ledger_import.services.decisions import Decision, DecisionTracker
from ledger_import.services.exclusions import load_exclusions
from ledger_import.services.execution import (
    ExecutionEngine,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
)
from ledger_import.services.ledger_store import fetch_existing_pool
from ledger_import.services.matching import LedgerRecord, MatchingConfig, load_matching_config, snapshot_pool
from ledger_import.services.normalizer import CandidateTransaction, ValidationError, normalize_date

logger = get_logger(__name__)


class ImportSource(str, Enum):
    CSV = "csv"
    BANK_SYNC = "bank_sync"
    STATEMENT = "statement"

    @property
    def mode(self) -> ReviewMode:
        if self == ImportSource.STATEMENT:
            return ReviewMode.RECONCILIATION
        return ReviewMode.IMPORT


class SessionNotFoundError(LookupError):
    """Session id is unknown, expired or owned by another user."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ReviewSession:
    id: str
    user_id: UUID
    account_id: int
    source: ImportSource
    candidates: tuple[CandidateTransaction, ...]
    tracker: DecisionTracker
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime = field(default_factory=_utcnow)
    executions: int = 0

    @property
    def conflict_set(self) -> ConflictSet:
        return self.tracker.conflict_set

    @property
    def batch_id(self) -> str:
        return self.id


class ReviewSessionStore:
    """Thread-safe in-memory session map with idle expiry."""

    def __init__(self, ttl_minutes: int | None = None) -> None:
        self.ttl = timedelta(minutes=ttl_minutes or settings.review_session_ttl_minutes)
        self._lock = threading.Lock()
        self._sessions: dict[str, ReviewSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def add(self, session: ReviewSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str, user_id: UUID) -> ReviewSession:
        now = _utcnow()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and now - session.last_accessed > self.ttl:
                del self._sessions[session_id]
                session = None
            if session is None or session.user_id != user_id:
                raise SessionNotFoundError(session_id)
            session.last_accessed = now
            return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        cutoff = _utcnow() - self.ttl
        with self._lock:
            expired = [sid for sid, session in self._sessions.items() if session.last_accessed < cutoff]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)


class ImportReviewService:
    """AnalyzeImport / RecordDecision / BulkApply / ExecuteImport over review sessions."""

    def __init__(
        self,
        store: ReviewSessionStore | None = None,
        engine: ExecutionEngine | None = None,
        config: MatchingConfig | None = None,
    ) -> None:
        self.store = store or ReviewSessionStore()
        self.engine = engine or ExecutionEngine()
        self._config = config

    @property
    def config(self) -> MatchingConfig:
        return self._config or load_matching_config()

    async def _load_pool(
        self,
        db: AsyncSession,
        user_id: UUID,
        account_id: int,
        candidates: Sequence[CandidateTransaction],
    ) -> tuple[LedgerRecord, ...]:
        dates = []
        for candidate in candidates:
            try:
                dates.append(normalize_date(candidate.txn_date)[0])
            except ValidationError:
                continue
        if not dates:
            return ()
        window = timedelta(days=self.config.date_window_days)
        rows = await fetch_existing_pool(db, user_id, account_id, min(dates) - window, max(dates) + window)
        return snapshot_pool(rows)

    async def _build(
        self,
        db: AsyncSession,
        user_id: UUID,
        account_id: int,
        candidates: Sequence[CandidateTransaction],
        source: ImportSource,
    ) -> ConflictSet:
        pool = await self._load_pool(db, user_id, account_id, candidates)
        exclusions = await load_exclusions(db, user_id)
        return await run_in_threadpool(
            build_conflict_set,
            candidates,
            pool,
            exclusions,
            account_id=account_id,
            config=self.config,
            mode=source.mode,
        )

    async def analyze_import(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: int,
        candidates: Sequence[CandidateTransaction],
        source: ImportSource = ImportSource.CSV,
    ) -> ReviewSession:
        batch = tuple(candidates)
        conflict_set = await self._build(db, user_id, account_id, batch, source)
        session = ReviewSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            account_id=account_id,
            source=source,
            candidates=batch,
            tracker=DecisionTracker(conflict_set),
        )
        self.store.add(session)
        logger.info(
            "Import review session created",
            session_id=session.id,
            account_id=account_id,
            source=source.value,
            candidates=len(batch),
            exact_duplicates=conflict_set.statistics.exact_duplicates,
            fuzzy_matches=conflict_set.statistics.fuzzy_matches,
        )
        return session

    def get_session(self, session_id: str, user_id: UUID) -> ReviewSession:
        return self.store.get(session_id, user_id)

    def record_decision(self, session_id: str, user_id: UUID, candidate_id: int, decision: Decision) -> bool:
        session = self.store.get(session_id, user_id)
        return session.tracker.set_decision(candidate_id, decision)

    def bulk_apply(self, session_id: str, user_id: UUID, bucket: ConflictBucket, decision: Decision) -> int:
        session = self.store.get(session_id, user_id)
        return session.tracker.bulk_apply(bucket, decision)

    def auto_resolve(self, session_id: str, user_id: UUID) -> int:
        session = self.store.get(session_id, user_id)
        return session.tracker.auto_resolve(self.config.auto_resolve_threshold)

    def clear_decisions(self, session_id: str, user_id: UUID) -> int:
        session = self.store.get(session_id, user_id)
        return session.tracker.clear_all()

    async def rebuild(self, db: AsyncSession, session_id: str, user_id: UUID) -> ReviewSession:
        """Re-run classification for the whole batch against fresh ledger and exclusion state."""
        session = self.store.get(session_id, user_id)
        conflict_set = await self._build(db, user_id, session.account_id, session.candidates, session.source)
        session.tracker.rebind(conflict_set)
        logger.info("Import review session rebuilt", session_id=session.id)
        return session

    async def execute_import(
        self,
        db: AsyncSession,
        session_id: str,
        user_id: UUID,
        *,
        force: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        session = self.store.get(session_id, user_id)
        request = ExecutionRequest(
            user_id=user_id,
            account_id=session.account_id,
            batch_id=session.batch_id,
            conflict_set=session.conflict_set,
            decisions=session.tracker.snapshot(),
        )
        result = await self.engine.execute(db, request=request, force=force, cancel_event=cancel_event)
        session.executions += 1
        if result.status == ExecutionStatus.COMPLETED:
            self.store.discard(session.id)
        return result
