"""Pydantic request/response schemas."""

from ledger_import.schemas.imports import (
    AnalyzeImportRequest,
    BulkApplyRequest,
    BulkApplyResponse,
    CandidateIn,
    DecisionRequest,
    DecisionUpdateResponse,
    ExecutionResultResponse,
    ReviewSessionResponse,
)

__all__ = [
    "AnalyzeImportRequest",
    "BulkApplyRequest",
    "BulkApplyResponse",
    "CandidateIn",
    "DecisionRequest",
    "DecisionUpdateResponse",
    "ExecutionResultResponse",
    "ReviewSessionResponse",
]
