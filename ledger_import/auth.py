"""Request-scoped user context.

Authentication happens upstream; the gateway forwards the authenticated user id
in the X-User-Id header.
"""

from uuid import UUID

from fastapi import Header, HTTPException, status


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> UUID:
    """Resolve the current user ID from the forwarded header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user context",
        )

    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID format",
        )
