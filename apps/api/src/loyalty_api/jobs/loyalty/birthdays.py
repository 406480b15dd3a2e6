"""Daily birthday bonus sweep."""

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy import extract, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.user import UserProfile
from loyalty_api.observability.loyalty import LoyaltyObservabilityStore
from loyalty_api.services.loyalty import LoyaltyPolicy, LoyaltyService


# meta: job: loyalty-birthday-bonuses

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


def birthday_matches(birthday: dt.date | None, today: dt.date) -> bool:
    """True when ``birthday`` falls on ``today``; Feb 29 birthdays count on Feb 28 in common years."""

    if birthday is None:
        return False
    if (birthday.month, birthday.day) == (today.month, today.day):
        return True
    if (birthday.month, birthday.day) == (2, 29) and (today.month, today.day) == (2, 28):
        try:
            dt.date(today.year, 2, 29)
        except ValueError:
            return True
    return False


async def run_birthday_bonuses(
    *,
    session_factory: SessionFactory,
    policy: LoyaltyPolicy,
    today: dt.date | None = None,
    telemetry: LoyaltyObservabilityStore | None = None,
) -> Dict[str, Any]:
    """Credit the yearly birthday bonus to every member whose birthday is today.

    Re-running the job on the same day is harmless: the bonus is keyed by
    member and year, so repeated credits are reported as duplicates.
    """

    today = today or dt.datetime.now(dt.timezone.utc).date()

    maybe_session = session_factory()
    session = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session

    async with session as managed_session:
        stmt = (
            select(UserProfile.id, UserProfile.birthday)
            .where(UserProfile.birthday.is_not(None))
            .where(extract("month", UserProfile.birthday) == today.month)
            .order_by(UserProfile.id)
        )
        rows = (await managed_session.execute(stmt)).all()
        await managed_session.rollback()

        service = LoyaltyService(managed_session, policy, telemetry=telemetry)
        summary = {"candidates": 0, "awarded": 0, "duplicates": 0, "failed": 0}
        for user_id, birthday in rows:
            if not birthday_matches(birthday, today):
                continue
            summary["candidates"] += 1
            result = await service.award_birthday_bonus(user_id, today.year)
            if not result.ok:
                summary["failed"] += 1
                logger.warning(
                    "Birthday bonus failed",
                    user_id=str(user_id),
                    kind=result.error_kind,
                )
            elif result.data.get("duplicate"):
                summary["duplicates"] += 1
            else:
                summary["awarded"] += 1

    logger.bind(run_date=today.isoformat(), **summary).info("Birthday bonus sweep finished")
    return summary


__all__ = ["birthday_matches", "run_birthday_bonuses"]
