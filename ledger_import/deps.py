"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from ledger_import.deps import CurrentUserId, DbSession

    async def my_endpoint(db: DbSession, user_id: CurrentUserId):
        ...
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_import.auth import get_current_user_id
from ledger_import.database import get_db
from ledger_import.services.review_session import ImportReviewService

_review_service = ImportReviewService()


def get_review_service() -> ImportReviewService:
    """Process-wide review service; sessions live in its in-memory store."""
    return _review_service


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
ReviewService = Annotated[ImportReviewService, Depends(get_review_service)]

__all__ = ["CurrentUserId", "DbSession", "ReviewService", "get_review_service"]
