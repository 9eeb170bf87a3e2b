"""Ledger duplicate detection API router."""

from decimal import Decimal

from fastapi import APIRouter, Query

from ledger_import.deps import CurrentUserId, DbSession
from ledger_import.schemas.duplicates import (
    DuplicateGroupResponse,
    DuplicateScanResponse,
    DuplicateTransactionResponse,
    ResolveDuplicatesRequest,
    ResolveDuplicatesResponse,
)
from ledger_import.services.ledger_duplicates import (
    DuplicateGroup,
    DuplicateScanOptions,
    resolve_duplicates,
    scan_ledger_duplicates,
)
from ledger_import.services.matching import LedgerRecord

router = APIRouter(prefix="/transactions/duplicates", tags=["duplicates"])


def _transaction_response(record: LedgerRecord, confidence: float | None = None) -> DuplicateTransactionResponse:
    return DuplicateTransactionResponse(
        id=record.id,
        account_id=record.account_id,
        txn_date=record.txn_date,
        amount=record.amount,
        currency=record.currency,
        description=record.raw_description or record.description,
        external_id=record.external_id,
        confidence=confidence,
    )


def _group_response(group: DuplicateGroup) -> DuplicateGroupResponse:
    return DuplicateGroupResponse(
        group_id=group.group_id,
        transactions=[
            _transaction_response(group.anchor),
            *(_transaction_response(member.record, member.confidence) for member in group.duplicates),
        ],
        highest_confidence=group.highest_confidence,
        total_amount=group.total_amount,
        date_from=group.date_from,
        date_to=group.date_to,
        description=group.anchor.raw_description or group.anchor.description,
    )


@router.get("", response_model=DuplicateScanResponse)
async def list_duplicates(
    db: DbSession,
    user_id: CurrentUserId,
    amount_tolerance: Decimal = Query(default=Decimal("0.01"), ge=0),
    date_tolerance_days: int = Query(default=1, ge=0, le=31),
    same_account_only: bool = Query(default=False),
    min_confidence: float = Query(default=0.5, ge=0, le=1),
    account_id: int | None = Query(default=None, ge=1),
) -> DuplicateScanResponse:
    """Groups of live ledger rows that look like the same transaction entered twice."""
    scan = await scan_ledger_duplicates(
        db,
        user_id,
        DuplicateScanOptions(
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            same_account_only=same_account_only,
            min_confidence=min_confidence,
            account_id=account_id,
        ),
    )
    return DuplicateScanResponse(
        groups=[_group_response(group) for group in scan.groups],
        total_groups=scan.total_groups,
        total_transactions=scan.total_transactions,
        processed_at=scan.processed_at,
    )


@router.post("/resolve", response_model=ResolveDuplicatesResponse)
async def resolve_duplicate_groups(
    data: ResolveDuplicatesRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ResolveDuplicatesResponse:
    """Soft-delete, keep or dismiss duplicate groups. Per-group failures are listed in errors."""
    result = await resolve_duplicates(db, user_id, [item.to_resolution() for item in data.resolutions])
    return ResolveDuplicatesResponse.model_validate(result)
