"""Execution engine: applies a reviewed decision set to the ledger.

Guarantees:
- Nothing is written while any candidate is Pending, unless forced (Pending then means Skip).
- Re-running the same batch never creates a second ledger row for a candidate
  (content-derived idempotency key, unique per user).
- One failing item never aborts the batch; failures are enumerated in the result.
- A cancellation or timeout stops new writes; work already committed stays committed.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.config import settings
from ledger_import.logger import async_log_timing, get_logger, log_exception
from ledger_import.services.conflicts import ConflictSet
from ledger_import.services.decisions import PENDING, Decision, DecisionType
from ledger_import.services.exclusions import create_exclusion, ledger_key
from ledger_import.services.ledger_store import create_keyed_transaction, idempotency_key
from ledger_import.services.matching import MatchResult
from ledger_import.services.transfers import LedgerTransferLinker, TransferLinker

logger = get_logger(__name__)

CategorizationHook = Callable[[Sequence[int]], Awaitable[None]]


class PreconditionError(Exception):
    """Execution refused because candidates are still pending."""

    def __init__(self, pending_ids: Sequence[int]) -> None:
        self.pending_ids = list(pending_ids)
        super().__init__(f"{len(self.pending_ids)} candidate(s) still pending a decision")


class ItemExecutionError(Exception):
    """A single candidate could not be applied."""


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"


class OutcomeType(str, Enum):
    IMPORTED = "imported"
    ALREADY_IMPORTED = "already_imported"
    SKIPPED = "skipped"
    EXCLUDED = "excluded"
    ALREADY_EXCLUDED = "already_excluded"
    TRANSFERRED = "transferred"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemError:
    candidate_id: int
    error: str
    error_type: str


@dataclass(frozen=True)
class ItemOutcome:
    candidate_id: int
    decision: DecisionType
    outcome: OutcomeType
    transaction_id: int | None = None
    exclusion_id: int | None = None


@dataclass(frozen=True)
class ExecutionRequest:
    user_id: UUID
    account_id: int
    batch_id: str
    conflict_set: ConflictSet
    decisions: Mapping[int, Decision]


@dataclass
class ExecutionResult:
    batch_id: str
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    imported: int = 0
    already_imported: int = 0
    skipped: int = 0
    excluded: int = 0
    already_excluded: int = 0
    transferred: int = 0
    errors: list[ItemError] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)
    created_transaction_ids: list[int] = field(default_factory=list)
    unprocessed_ids: list[int] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def record(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome == OutcomeType.IMPORTED:
            self.imported += 1
        elif outcome.outcome == OutcomeType.ALREADY_IMPORTED:
            self.already_imported += 1
        elif outcome.outcome == OutcomeType.SKIPPED:
            self.skipped += 1
        elif outcome.outcome == OutcomeType.EXCLUDED:
            self.excluded += 1
        elif outcome.outcome == OutcomeType.ALREADY_EXCLUDED:
            self.already_excluded += 1
        elif outcome.outcome == OutcomeType.TRANSFERRED:
            self.transferred += 1


def pending_candidates(conflict_set: ConflictSet, decisions: Mapping[int, Decision]) -> list[int]:
    return [cid for cid in conflict_set.candidate_ids if decisions.get(cid, PENDING).is_pending]


def _occurrences(results: Sequence[MatchResult]) -> dict[int, int]:
    """Position of each candidate among identical candidates of the batch."""
    seen: Counter[str] = Counter()
    positions: dict[int, int] = {}
    for result in results:
        if result.candidate_key is None:
            continue
        positions[result.candidate_id] = seen[result.candidate_key]
        seen[result.candidate_key] += 1
    return positions


class ExecutionEngine:
    """Applies decisions inside the caller's database session."""

    def __init__(
        self,
        *,
        transfer_linker: TransferLinker | None = None,
        categorization_hook: CategorizationHook | None = None,
        commit_every: int | None = None,
    ) -> None:
        self.transfer_linker = transfer_linker or LedgerTransferLinker()
        self.categorization_hook = categorization_hook
        self.commit_every = commit_every or settings.execution_commit_every
        self._hook_tasks: set[asyncio.Task[None]] = set()

    async def execute(
        self,
        db: AsyncSession,
        *,
        request: ExecutionRequest,
        force: bool = False,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Apply every decision of a reviewed batch.

        Raises PreconditionError before any write when candidates are pending and
        force is False.
        """
        conflict_set = request.conflict_set
        pending = pending_candidates(conflict_set, request.decisions)
        if pending and not force:
            raise PreconditionError(pending)

        timeout = timeout if timeout is not None else settings.execution_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        result = ExecutionResult(batch_id=request.batch_id)
        occurrences = _occurrences(conflict_set.results)
        candidate_ids = list(conflict_set.candidate_ids)

        async with async_log_timing(
            "execute_import",
            logger=logger,
            batch_id=request.batch_id,
            account_id=request.account_id,
            candidates=len(candidate_ids),
            forced=bool(pending),
        ) as timing:
            processed = 0
            for position, candidate_id in enumerate(candidate_ids):
                if (cancel_event is not None and cancel_event.is_set()) or (
                    deadline is not None and loop.time() >= deadline
                ):
                    result.status = ExecutionStatus.CANCELLED
                    result.unprocessed_ids = candidate_ids[position:]
                    logger.warning(
                        "Import execution stopped before completion",
                        batch_id=request.batch_id,
                        unprocessed=len(result.unprocessed_ids),
                    )
                    break

                decision = request.decisions.get(candidate_id, PENDING)
                match_result = conflict_set.result(candidate_id)
                try:
                    async with db.begin_nested():
                        outcome = await self._apply(
                            db,
                            request=request,
                            match_result=match_result,
                            decision=decision,
                            occurrence=occurrences.get(candidate_id, 0),
                        )
                except Exception as exc:
                    log_exception(
                        logger,
                        exc,
                        "Failed to apply import decision",
                        batch_id=request.batch_id,
                        candidate_id=candidate_id,
                        decision=decision.type.value,
                    )
                    result.errors.append(
                        ItemError(candidate_id=candidate_id, error=str(exc), error_type=type(exc).__name__)
                    )
                    result.outcomes.append(ItemOutcome(candidate_id, decision.type, OutcomeType.FAILED))
                else:
                    result.record(outcome)
                    if outcome.outcome == OutcomeType.IMPORTED and outcome.transaction_id is not None:
                        result.created_transaction_ids.append(outcome.transaction_id)

                processed += 1
                if processed % self.commit_every == 0:
                    await db.commit()

            await db.commit()

            if result.status != ExecutionStatus.CANCELLED and result.errors:
                result.status = ExecutionStatus.PARTIAL_FAILURE
            timing.update(
                status=result.status.value,
                imported=result.imported,
                already_imported=result.already_imported,
                skipped=result.skipped,
                excluded=result.excluded,
                transferred=result.transferred,
                failed=result.failed,
            )

        if result.created_transaction_ids:
            self._schedule_categorization(result.created_transaction_ids)
        return result

    async def _apply(
        self,
        db: AsyncSession,
        *,
        request: ExecutionRequest,
        match_result: MatchResult,
        decision: Decision,
        occurrence: int,
    ) -> ItemOutcome:
        candidate_id = match_result.candidate_id
        if decision.type in (DecisionType.PENDING, DecisionType.SKIP):
            return ItemOutcome(candidate_id, decision.type, OutcomeType.SKIPPED)

        record = match_result.record
        if record is None or match_result.candidate_key is None:
            raise ItemExecutionError(match_result.validation_error or "candidate failed validation")

        if decision.type == DecisionType.MARK_NOT_DUPLICATE:
            if not match_result.matches:
                if match_result.exclusion_ids:
                    return ItemOutcome(
                        candidate_id,
                        decision.type,
                        OutcomeType.ALREADY_EXCLUDED,
                        exclusion_id=match_result.exclusion_ids[0],
                    )
                raise ItemExecutionError("candidate has no matched transactions to exclude")
            keys = [match_result.candidate_key, *(ledger_key(lid) for lid in match_result.matched_ledger_ids)]
            exclusion, created = await create_exclusion(
                db,
                request.user_id,
                keys,
                Decimal(str(match_result.confidence)),
                notes=decision.note,
            )
            return ItemOutcome(
                candidate_id,
                decision.type,
                OutcomeType.EXCLUDED if created else OutcomeType.ALREADY_EXCLUDED,
                exclusion_id=exclusion.id,
            )

        key = idempotency_key(request.account_id, record, request.batch_id, occurrence)

        if decision.type == DecisionType.MERGE_AS_TRANSFER:
            linked = await self.transfer_linker.link(
                db,
                user_id=request.user_id,
                account_id=request.account_id,
                record=record,
                target_ledger_id=decision.target_ledger_id,
                key=key,
            )
            return ItemOutcome(
                candidate_id,
                decision.type,
                OutcomeType.TRANSFERRED,
                transaction_id=linked.transaction_id,
            )

        txn, created = await create_keyed_transaction(
            db,
            user_id=request.user_id,
            account_id=request.account_id,
            record=record,
            key=key,
        )
        return ItemOutcome(
            candidate_id,
            decision.type,
            OutcomeType.IMPORTED if created else OutcomeType.ALREADY_IMPORTED,
            transaction_id=txn.id,
        )

    def _schedule_categorization(self, transaction_ids: Sequence[int]) -> None:
        if self.categorization_hook is None:
            return
        task = asyncio.create_task(self._run_categorization(list(transaction_ids)))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _run_categorization(self, transaction_ids: list[int]) -> None:
        try:
            await self.categorization_hook(transaction_ids)
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Categorization hook failed",
                level="warning",
                transactions=len(transaction_ids),
            )

    async def drain_hooks(self) -> None:
        """Wait for scheduled categorization tasks (shutdown and tests)."""
        if self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)
