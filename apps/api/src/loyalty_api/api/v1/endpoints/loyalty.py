"""API endpoints for loyalty points, badges, referrals, and redemptions."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from loyalty_api.api.dependencies.loyalty import get_loyalty_service
from loyalty_api.api.dependencies.security import require_checkout_api_key
from loyalty_api.api.dependencies.session import get_member_id
from loyalty_api.services.loyalty import MAX_ORDER_TOTAL_CENTS, LoyaltyResult, LoyaltyService


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


_ERROR_STATUS = {
    "not_authenticated": 401,
    "invalid_redemption_amount": 400,
    "invalid_purchase_amount": 400,
    "invalid_cursor": 400,
    "invalid_birthday": 400,
    "referral_not_found": 400,
    "insufficient_balance": 409,
    "redemption_pending": 409,
    "store_unavailable": 503,
}

# Free-form payloads whose keys are returned as stored.
_OPAQUE_KEYS = {"metadata"}


class PurchaseAwardRequest(BaseModel):
    userId: UUID
    orderId: str = Field(..., min_length=1)
    totalCents: int = Field(..., ge=0, le=MAX_ORDER_TOTAL_CENTS)


class ReferralLinkRequest(BaseModel):
    referredUserId: UUID
    code: str = Field(..., min_length=1)


class ReferralCompleteRequest(BaseModel):
    referredUserId: UUID
    orderId: str = Field(..., min_length=1)


class BirthdayBonusRequest(BaseModel):
    userId: UUID
    year: int = Field(..., ge=1900, le=9999)


class RedemptionRequest(BaseModel):
    points: int
    requestId: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Client generated id; retries with the same id return the original code",
    )


class ProfileUpdateRequest(BaseModel):
    displayName: Optional[str] = Field(default=None, max_length=120)
    birthday: Optional[date] = None


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            to_camel(key): (item if key in _OPAQUE_KEYS else _camelize(item))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_camelize(item) for item in value]
    return value


def _respond(result: LoyaltyResult) -> JSONResponse:
    """Render the discriminated result with an HTTP status matching its error kind."""

    status_code = 200 if result.ok else _ERROR_STATUS.get(result.error_kind or "", 500)
    return JSONResponse(status_code=status_code, content=_camelize(result.as_dict()))


# ----------------------------------------------------------------------
# Member routes (storefront session)
# ----------------------------------------------------------------------


@router.get("/me")
async def get_loyalty_snapshot(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Balance, tier and progress towards the next tier."""

    return _respond(await service.get_loyalty_snapshot(member_id))


@router.get("/ledger")
async def list_ledger(
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Points history, newest first."""

    return _respond(await service.list_ledger(member_id, limit=limit, cursor=cursor))


@router.get("/badges")
async def list_badges(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.list_badges(member_id))


@router.post("/badges/evaluate")
async def evaluate_badges(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.evaluate_badges(member_id))


@router.patch("/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Update the display name and/or birthday; a name change re-checks profile badges."""

    fields = payload.model_fields_set
    stored_birthday: LoyaltyResult | None = None
    if "birthday" in fields:
        stored_birthday = await service.update_birthday(member_id, payload.birthday)
        if not stored_birthday.ok or "displayName" not in fields:
            return _respond(stored_birthday)

    result = await service.update_display_name(member_id, payload.displayName)
    if result.ok and stored_birthday is not None:
        result.data["birthday"] = stored_birthday.data["birthday"]
    return _respond(result)


@router.get("/referral-code")
async def get_referral_code(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Return the member's referral code, creating it on first request."""

    return _respond(await service.get_or_create_referral_code(member_id))


@router.get("/referrals/stats")
async def get_referral_stats(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.get_referral_stats(member_id))


@router.get("/redemptions/options")
async def list_redemption_options(
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.list_redemption_options(member_id))


@router.post("/redemptions")
async def redeem_points(
    payload: RedemptionRequest,
    member_id: UUID | None = Depends(get_member_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Exchange points for a single-use discount code."""

    return _respond(await service.redeem_points(member_id, payload.points, payload.requestId))


# ----------------------------------------------------------------------
# Collaborator routes (payment webhook, signup flow)
# ----------------------------------------------------------------------


@router.post("/purchases", dependencies=[Depends(require_checkout_api_key)])
async def award_purchase(
    payload: PurchaseAwardRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Credit purchase XP for a paid order; safe to call again for the same order."""

    result = await service.award_xp_for_purchase(payload.userId, payload.orderId, payload.totalCents)
    if not result.ok:
        return _respond(result)

    completed = False
    if payload.totalCents > 0:
        referral = await service.complete_referral(payload.userId, payload.orderId)
        if not referral.ok:
            logger.warning(
                "Referral completion skipped after purchase award",
                order_id=payload.orderId,
                kind=referral.error_kind,
            )
        completed = bool(referral.ok and referral.data.get("completed"))
    result.data["referral_completed"] = completed
    return _respond(result)


@router.post("/referrals/link", dependencies=[Depends(require_checkout_api_key)])
async def link_referral(
    payload: ReferralLinkRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    """Attach a newly registered member to the owner of a referral code."""

    return _respond(await service.link_referral(payload.referredUserId, payload.code))


@router.post("/referrals/complete", dependencies=[Depends(require_checkout_api_key)])
async def complete_referral(
    payload: ReferralCompleteRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.complete_referral(payload.referredUserId, payload.orderId))


@router.post("/birthday-bonuses", dependencies=[Depends(require_checkout_api_key)])
async def award_birthday_bonus(
    payload: BirthdayBonusRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> JSONResponse:
    return _respond(await service.award_birthday_bonus(payload.userId, payload.year))
