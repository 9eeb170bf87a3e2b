"""Pydantic schemas for the import review API."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_import.schemas.base import BaseResponse
from ledger_import.services.conflicts import ConflictBucket, ReviewMode
from ledger_import.services.decisions import DecisionType
from ledger_import.services.execution import ExecutionStatus, OutcomeType
from ledger_import.services.matching import MatchClassification
from ledger_import.services.normalizer import CandidateTransaction
from ledger_import.services.review_session import ImportSource

MAX_BATCH_SIZE = 5000


class CandidateIn(BaseModel):
    """One incoming transaction as produced by CSV parsing or bank sync.

    amount and txn_date are accepted loosely; a malformed value is reported on that
    candidate instead of rejecting the whole request.
    """

    amount: str | int | float | None = None
    txn_date: str | None = None
    description: str = ""
    currency: str = Field(default="NZD", min_length=3, max_length=3)
    reference: str | None = Field(default=None, max_length=100)
    external_id: str | None = Field(default=None, max_length=200)
    bank_category: str | None = Field(default=None, max_length=100)
    source_row: int | None = None

    def to_candidate(self) -> CandidateTransaction:
        return CandidateTransaction(
            amount=self.amount,
            txn_date=self.txn_date,
            description=self.description,
            currency=self.currency,
            reference=self.reference,
            external_id=self.external_id,
            bank_category=self.bank_category,
            source_row=self.source_row,
        )


class AnalyzeImportRequest(BaseModel):
    account_id: int = Field(ge=1)
    source: ImportSource = ImportSource.CSV
    candidates: list[CandidateIn] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


class DecisionRequest(BaseModel):
    decision: DecisionType
    target_ledger_id: int | None = None
    note: str | None = Field(default=None, max_length=500)


class BulkApplyRequest(BaseModel):
    bucket: ConflictBucket
    decision: DecisionType
    note: str | None = Field(default=None, max_length=500)


class ComponentScoresResponse(BaseResponse):
    amount_match: bool
    amount_score: float
    date_delta_days: int
    date_score: float
    description_similarity: float


class MatchedTransactionResponse(BaseResponse):
    ledger_id: int
    confidence: float
    txn_date: date
    amount: Decimal
    description: str
    components: ComponentScoresResponse


class WarningResponse(BaseResponse):
    code: str
    message: str


class BatchWarningResponse(WarningResponse):
    candidate_ids: list[int] = Field(default_factory=list)


class DecisionResponse(BaseResponse):
    decision: DecisionType
    target_ledger_id: int | None = None
    note: str | None = None


class CandidateResultResponse(BaseModel):
    candidate_id: int
    bucket: ConflictBucket
    classification: MatchClassification
    confidence: float
    amount: Decimal | None = None
    txn_date: date | None = None
    description: str
    source_row: int | None = None
    matches: list[MatchedTransactionResponse] = Field(default_factory=list)
    components: ComponentScoresResponse | None = None
    excluded_ledger_ids: list[int] = Field(default_factory=list)
    warnings: list[WarningResponse] = Field(default_factory=list)
    validation_error: str | None = None
    decision: DecisionResponse


class LedgerRowResponse(BaseModel):
    id: int
    txn_date: date
    amount: Decimal
    description: str


class StatisticsResponse(BaseResponse):
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


class ProgressResponse(BaseResponse):
    decided: int
    total: int
    percent_reviewed: float


class ReviewSessionResponse(BaseModel):
    session_id: str
    account_id: int
    source: ImportSource
    mode: ReviewMode
    statistics: StatisticsResponse
    progress: ProgressResponse
    decision_counts: dict[DecisionType, int]
    groups: dict[ConflictBucket, list[CandidateResultResponse]]
    unmatched_system: list[LedgerRowResponse]
    warnings: list[BatchWarningResponse]


class DecisionUpdateResponse(BaseModel):
    candidate_id: int
    changed: bool
    decision: DecisionResponse
    progress: ProgressResponse


class BulkApplyResponse(BaseModel):
    applied: int
    progress: ProgressResponse


class ItemErrorResponse(BaseResponse):
    candidate_id: int
    error: str
    error_type: str


class ItemOutcomeResponse(BaseResponse):
    candidate_id: int
    decision: DecisionType
    outcome: OutcomeType
    transaction_id: int | None = None
    exclusion_id: int | None = None


class ExecutionResultResponse(BaseResponse):
    batch_id: str
    status: ExecutionStatus
    imported: int
    already_imported: int
    skipped: int
    excluded: int
    already_excluded: int
    transferred: int
    failed: int
    errors: list[ItemErrorResponse]
    outcomes: list[ItemOutcomeResponse]
    created_transaction_ids: list[int]
    unprocessed_ids: list[int]
