"""Import review API router."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from ledger_import.deps import CurrentUserId, DbSession, ReviewService
from ledger_import.logger import get_logger
from ledger_import.schemas.imports import (
    AnalyzeImportRequest,
    BatchWarningResponse,
    BulkApplyRequest,
    BulkApplyResponse,
    CandidateResultResponse,
    ComponentScoresResponse,
    DecisionRequest,
    DecisionResponse,
    DecisionUpdateResponse,
    ExecutionResultResponse,
    LedgerRowResponse,
    MatchedTransactionResponse,
    ProgressResponse,
    ReviewSessionResponse,
    StatisticsResponse,
    WarningResponse,
)
from ledger_import.services.conflicts import CANDIDATE_BUCKETS
from ledger_import.services.decisions import Decision, DecisionType, InvalidDecisionError, UnknownCandidateError
from ledger_import.services.execution import PreconditionError
from ledger_import.services.matching import MatchResult
from ledger_import.services.review_session import ImportReviewService, ReviewSession, SessionNotFoundError
from ledger_import.utils.exceptions import raise_bad_request, raise_conflict, raise_not_found

router = APIRouter(prefix="/imports", tags=["imports"])
logger = get_logger(__name__)


def _decision_response(decision: Decision) -> DecisionResponse:
    return DecisionResponse(
        decision=decision.type,
        target_ledger_id=decision.target_ledger_id,
        note=decision.note,
    )


def _progress_response(session: ReviewSession) -> ProgressResponse:
    return ProgressResponse.model_validate(session.tracker.progress())


def _build_candidate_response(
    session: ReviewSession,
    result: MatchResult,
    decision: Decision,
) -> CandidateResultResponse:
    record = result.record
    return CandidateResultResponse(
        candidate_id=result.candidate_id,
        bucket=session.conflict_set.bucket_of(result.candidate_id),
        classification=result.classification,
        confidence=result.confidence,
        amount=record.amount if record else None,
        txn_date=record.txn_date if record else None,
        description=record.raw_description if record else (result.candidate.description or ""),
        source_row=result.candidate.source_row,
        matches=[
            MatchedTransactionResponse(
                ledger_id=match.ledger_id,
                confidence=match.confidence,
                txn_date=match.txn_date,
                amount=match.amount,
                description=match.description,
                components=ComponentScoresResponse.model_validate(match.components),
            )
            for match in result.matches
        ],
        components=ComponentScoresResponse.model_validate(result.components) if result.components else None,
        excluded_ledger_ids=list(result.excluded_ledger_ids),
        warnings=[WarningResponse.model_validate(warning) for warning in result.warnings],
        validation_error=result.validation_error,
        decision=_decision_response(decision),
    )


def _build_session_response(session: ReviewSession) -> ReviewSessionResponse:
    conflict_set = session.conflict_set
    decisions = session.tracker.snapshot()
    groups = {
        bucket: [
            _build_candidate_response(session, item, decisions[item.candidate_id])
            for item in conflict_set.group(bucket).items
        ]
        for bucket in CANDIDATE_BUCKETS
    }
    return ReviewSessionResponse(
        session_id=session.id,
        account_id=session.account_id,
        source=session.source,
        mode=conflict_set.mode,
        statistics=StatisticsResponse.model_validate(conflict_set.statistics),
        progress=_progress_response(session),
        decision_counts=session.tracker.counts(),
        groups=groups,
        unmatched_system=[
            LedgerRowResponse(
                id=row.id,
                txn_date=row.txn_date,
                amount=row.amount,
                description=row.raw_description or row.description,
            )
            for row in conflict_set.unmatched_system
        ],
        warnings=[
            BatchWarningResponse(code=warning.code, message=warning.message, candidate_ids=list(warning.candidate_ids))
            for warning in conflict_set.warnings
        ],
    )


def _get_session(service: ImportReviewService, session_id: str, user_id: UUID) -> ReviewSession:
    try:
        return service.get_session(session_id, user_id)
    except SessionNotFoundError as exc:
        raise_not_found("Import session", cause=exc)


def _to_decision(decision_type: DecisionType, target_ledger_id: int | None = None, note: str | None = None) -> Decision:
    try:
        return Decision(decision_type, target_ledger_id=target_ledger_id, note=note)
    except InvalidDecisionError as exc:
        raise_bad_request(str(exc), cause=exc)


@router.post("/analyze", response_model=ReviewSessionResponse, status_code=status.HTTP_201_CREATED)
async def analyze_import(
    data: AnalyzeImportRequest,
    db: DbSession,
    user_id: CurrentUserId,
    service: ReviewService,
) -> ReviewSessionResponse:
    """Classify a candidate batch against the ledger and open a review session."""
    session = await service.analyze_import(
        db,
        user_id=user_id,
        account_id=data.account_id,
        candidates=[candidate.to_candidate() for candidate in data.candidates],
        source=data.source,
    )
    return _build_session_response(session)


@router.get("/{session_id}", response_model=ReviewSessionResponse)
async def get_import_session(
    session_id: str,
    user_id: CurrentUserId,
    service: ReviewService,
) -> ReviewSessionResponse:
    session = _get_session(service, session_id, user_id)
    return _build_session_response(session)


@router.put("/{session_id}/decisions/{candidate_id}", response_model=DecisionUpdateResponse)
async def record_decision(
    session_id: str,
    candidate_id: int,
    data: DecisionRequest,
    user_id: CurrentUserId,
    service: ReviewService,
) -> DecisionUpdateResponse:
    """Set (or revoke to pending) the decision for one candidate."""
    session = _get_session(service, session_id, user_id)
    decision = _to_decision(data.decision, data.target_ledger_id, data.note)
    try:
        changed = service.record_decision(session_id, user_id, candidate_id, decision)
    except UnknownCandidateError as exc:
        raise_not_found("Candidate", cause=exc)
    except InvalidDecisionError as exc:
        raise_bad_request(str(exc), cause=exc)

    return DecisionUpdateResponse(
        candidate_id=candidate_id,
        changed=changed,
        decision=_decision_response(session.tracker.get(candidate_id)),
        progress=_progress_response(session),
    )


@router.post("/{session_id}/bulk", response_model=BulkApplyResponse)
async def bulk_apply(
    session_id: str,
    data: BulkApplyRequest,
    user_id: CurrentUserId,
    service: ReviewService,
) -> BulkApplyResponse:
    """Apply a decision to every still-pending candidate of a bucket."""
    session = _get_session(service, session_id, user_id)
    decision = _to_decision(data.decision, note=data.note)
    try:
        applied = service.bulk_apply(session_id, user_id, data.bucket, decision)
    except InvalidDecisionError as exc:
        raise_bad_request(str(exc), cause=exc)
    return BulkApplyResponse(applied=applied, progress=_progress_response(session))


@router.post("/{session_id}/auto-resolve", response_model=BulkApplyResponse)
async def auto_resolve(
    session_id: str,
    user_id: CurrentUserId,
    service: ReviewService,
) -> BulkApplyResponse:
    session = _get_session(service, session_id, user_id)
    applied = service.auto_resolve(session_id, user_id)
    return BulkApplyResponse(applied=applied, progress=_progress_response(session))


@router.post("/{session_id}/clear", response_model=BulkApplyResponse)
async def clear_decisions(
    session_id: str,
    user_id: CurrentUserId,
    service: ReviewService,
) -> BulkApplyResponse:
    session = _get_session(service, session_id, user_id)
    cleared = service.clear_decisions(session_id, user_id)
    return BulkApplyResponse(applied=cleared, progress=_progress_response(session))


@router.post("/{session_id}/rebuild", response_model=ReviewSessionResponse)
async def rebuild_session(
    session_id: str,
    db: DbSession,
    user_id: CurrentUserId,
    service: ReviewService,
) -> ReviewSessionResponse:
    """Re-run classification with the current ledger and exclusions, keeping decisions."""
    _get_session(service, session_id, user_id)
    session = await service.rebuild(db, session_id, user_id)
    return _build_session_response(session)


@router.post("/{session_id}/execute", response_model=ExecutionResultResponse)
async def execute_import(
    session_id: str,
    db: DbSession,
    user_id: CurrentUserId,
    service: ReviewService,
    force: bool = Query(default=False, description="Treat pending candidates as skipped"),
) -> ExecutionResultResponse:
    """Apply the session's decisions to the ledger.

    409 when candidates are still pending and force is false; nothing is written.
    A run with per-item failures returns 200 with status partial_failure.
    """
    _get_session(service, session_id, user_id)
    try:
        result = await service.execute_import(db, session_id, user_id, force=force)
    except PreconditionError as exc:
        logger.info(
            "Import execution refused - pending decisions",
            session_id=session_id,
            pending=len(exc.pending_ids),
        )
        raise_conflict(
            {
                "code": "precondition_failed",
                "message": str(exc),
                "pending_candidate_ids": exc.pending_ids,
            },
            cause=exc,
        )
    return ExecutionResultResponse.model_validate(result)
