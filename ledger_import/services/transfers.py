"""Transfer linking for MergeAsTransfer decisions.

A transfer is recorded as two ledger rows with opposite signs that point at each
other through linked_transaction_id. The existing leg is the decision target;
the candidate becomes the new leg.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.logger import get_logger
from ledger_import.models import TransactionSource
from ledger_import.services.ledger_store import create_keyed_transaction, get_transaction
from ledger_import.services.normalizer import NormalizedRecord
from ledger_import.services.similarity import DEFAULT_TRANSFER_TOLERANCE_PERCENT, transfer_amount_match

logger = get_logger(__name__)


class TransferLinkError(Exception):
    """Transfer target is missing or does not mirror the candidate."""


@dataclass(frozen=True)
class TransferLinkResult:
    transaction_id: int
    target_id: int
    created: bool


class TransferLinker(Protocol):
    async def link(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: int,
        record: NormalizedRecord,
        target_ledger_id: int,
        key: str,
    ) -> TransferLinkResult: ...


class LedgerTransferLinker:
    """Default linker that writes both legs into the ledger table."""

    def __init__(self, tolerance_percent: Decimal | int = DEFAULT_TRANSFER_TOLERANCE_PERCENT) -> None:
        self.tolerance_percent = tolerance_percent

    async def link(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: int,
        record: NormalizedRecord,
        target_ledger_id: int,
        key: str,
    ) -> TransferLinkResult:
        target = await get_transaction(db, user_id, target_ledger_id)
        if target is None or target.is_deleted:
            raise TransferLinkError(f"Transfer target {target_ledger_id} not found")
        if target.account_id == account_id:
            raise TransferLinkError("Transfer target must belong to another account")
        if not transfer_amount_match(record.amount, target.amount, self.tolerance_percent):
            raise TransferLinkError(
                f"Amounts {record.amount} and {target.amount} do not mirror each other"
            )
        if target.linked_transaction_id is not None:
            peer = await get_transaction(db, user_id, target.linked_transaction_id)
            if peer is not None and peer.idempotency_key != key:
                raise TransferLinkError(f"Transfer target {target_ledger_id} is already linked")

        txn, created = await create_keyed_transaction(
            db,
            user_id=user_id,
            account_id=account_id,
            record=record,
            key=key,
            source=TransactionSource.TRANSFER,
            linked_transaction_id=target.id,
        )
        target.linked_transaction_id = txn.id
        await db.flush()

        logger.info(
            "Transfer legs linked",
            transaction_id=txn.id,
            target_id=target.id,
            created=created,
        )
        return TransferLinkResult(transaction_id=txn.id, target_id=target.id, created=created)
