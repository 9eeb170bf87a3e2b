"""Pydantic schemas for ledger duplicate detection and resolution."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_import.schemas.base import BaseResponse
from ledger_import.services.ledger_duplicates import DuplicateResolution

MAX_RESOLUTIONS = 500


class DuplicateTransactionResponse(BaseResponse):
    id: int
    account_id: int | None
    txn_date: date
    amount: Decimal
    currency: str
    description: str
    external_id: str | None
    confidence: float | None = Field(default=None, description="Score against the group anchor; None for the anchor")


class DuplicateGroupResponse(BaseModel):
    group_id: str
    transactions: list[DuplicateTransactionResponse]
    highest_confidence: float
    total_amount: Decimal
    date_from: date
    date_to: date
    description: str


class DuplicateScanResponse(BaseModel):
    groups: list[DuplicateGroupResponse]
    total_groups: int
    total_transactions: int
    processed_at: datetime


class DuplicateResolutionIn(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    keep_ids: list[int] = Field(default_factory=list)
    delete_ids: list[int] = Field(default_factory=list)
    mark_not_duplicate: bool = False
    notes: str | None = Field(default=None, max_length=500)

    def to_resolution(self) -> DuplicateResolution:
        return DuplicateResolution(
            group_id=self.group_id,
            keep_ids=tuple(self.keep_ids),
            delete_ids=tuple(self.delete_ids),
            mark_not_duplicate=self.mark_not_duplicate,
            notes=self.notes,
        )


class ResolveDuplicatesRequest(BaseModel):
    resolutions: list[DuplicateResolutionIn] = Field(min_length=1, max_length=MAX_RESOLUTIONS)


class ResolutionErrorResponse(BaseResponse):
    group_id: str
    message: str


class ResolveDuplicatesResponse(BaseResponse):
    success: bool
    deleted: int
    kept: int
    exclusions_created: int
    exclusion_ids: list[int]
    errors: list[ResolutionErrorResponse]
