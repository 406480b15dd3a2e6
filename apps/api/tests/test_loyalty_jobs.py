"""Tests for the birthday bonus job."""

import datetime as dt
from uuid import uuid4

import pytest

from loyalty_api.jobs.loyalty import birthday_matches, run_birthday_bonuses
from loyalty_api.models.user import UserProfile
from loyalty_api.observability.loyalty import LoyaltyObservabilityStore


@pytest.mark.parametrize(
    "birthday, today, expected",
    [
        (dt.date(1990, 10, 18), dt.date(2026, 10, 18), True),
        (dt.date(1990, 10, 19), dt.date(2026, 10, 18), False),
        (None, dt.date(2026, 10, 18), False),
        (dt.date(2000, 2, 29), dt.date(2027, 2, 28), True),
        (dt.date(2000, 2, 29), dt.date(2028, 2, 28), False),
        (dt.date(2000, 2, 29), dt.date(2028, 2, 29), True),
        (dt.date(2001, 2, 28), dt.date(2028, 2, 28), True),
    ],
)
def test_birthday_matches(birthday, today, expected) -> None:
    assert birthday_matches(birthday, today) is expected


@pytest.mark.asyncio
async def test_birthday_job_awards_once_per_year(session_factory, loyalty_policy) -> None:
    """Re-running the sweep on the same day reports duplicates instead of crediting again."""

    celebrant, tomorrow, no_birthday, spring = uuid4(), uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        session.add_all(
            [
                UserProfile(id=celebrant, birthday=dt.date(1990, 10, 18)),
                UserProfile(id=tomorrow, birthday=dt.date(1985, 10, 19)),
                UserProfile(id=no_birthday),
                UserProfile(id=spring, birthday=dt.date(1992, 3, 18)),
            ]
        )
        await session.commit()

    telemetry = LoyaltyObservabilityStore()
    today = dt.date(2026, 10, 18)

    first = await run_birthday_bonuses(
        session_factory=session_factory, policy=loyalty_policy, today=today, telemetry=telemetry
    )
    second = await run_birthday_bonuses(session_factory=session_factory, policy=loyalty_policy, today=today)

    assert first == {"candidates": 1, "awarded": 1, "duplicates": 0, "failed": 0}
    assert second == {"candidates": 1, "awarded": 0, "duplicates": 1, "failed": 0}
    assert telemetry.snapshot().awards["type:birthday"] == 1

    async with session_factory() as session:
        awarded = await session.get(UserProfile, celebrant)
        skipped = await session.get(UserProfile, tomorrow)

    assert awarded.total_points == loyalty_policy.birthday_bonus_points
    assert skipped.total_points == 0


@pytest.mark.asyncio
async def test_leap_day_birthdays_are_celebrated_in_common_years(session_factory, loyalty_policy) -> None:
    leapling = uuid4()
    async with session_factory() as session:
        session.add(UserProfile(id=leapling, birthday=dt.date(2000, 2, 29)))
        await session.commit()

    summary = await run_birthday_bonuses(
        session_factory=session_factory,
        policy=loyalty_policy,
        today=dt.date(2027, 2, 28),
    )

    assert summary["awarded"] == 1
    async with session_factory() as session:
        profile = await session.get(UserProfile, leapling)
    assert profile.total_points == loyalty_policy.birthday_bonus_points
