"""Session-aware dependencies for storefront member APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Header, HTTPException, status


async def get_member_id(
    session_user: str | None = Header(None, alias="X-Session-User"),
) -> UUID | None:
    """Resolve the member id forwarded by the storefront session layer.

    A missing header yields None; loyalty operations then answer with a
    ``not_authenticated`` result instead of raising here.
    """

    if not session_user:
        return None

    try:
        return UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error
