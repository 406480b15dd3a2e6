"""Per-request construction of the loyalty service."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.session import get_session
from loyalty_api.services.loyalty import LoyaltyService


async def get_loyalty_service(
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyService:
    return LoyaltyService(
        db,
        request.app.state.loyalty_policy,
        telemetry=request.app.state.loyalty_telemetry,
    )
