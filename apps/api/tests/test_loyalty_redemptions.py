import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from loyalty_api.models.loyalty import DiscountCode, LedgerEventType, LoyaltyLedgerEntry
from loyalty_api.models.user import UserProfile
from loyalty_api.services.loyalty import BalanceProjector, LedgerStore, LoyaltyService, redemption_key


async def _balance(session, user_id) -> int:
    profile = await session.get(UserProfile, user_id, populate_existing=True)
    return int(profile.total_points)


@pytest.mark.asyncio
async def test_redeem_points_issues_single_use_code(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 300)
        service = LoyaltyService(session, loyalty_policy)

        result = await service.redeem_points(user_id, 250, "req-1")

        assert result.ok
        assert result.data["points"] == 250
        assert result.data["value_cents"] == 500
        assert result.data["total_points"] == 50
        assert result.data["replayed"] is False
        assert result.data["code"].startswith(f"{loyalty_policy.discount_code_prefix}-")

        valid_until = datetime.fromisoformat(result.data["valid_until"])
        expected = datetime.now(timezone.utc) + timedelta(days=loyalty_policy.discount_valid_days)
        assert abs(valid_until - expected) < timedelta(minutes=5)

        discount = (
            await session.execute(select(DiscountCode).where(DiscountCode.code == result.data["code"]))
        ).scalar_one()
        assert discount.discount_type == "fixed"
        assert discount.value_cents == 500
        assert discount.min_order_cents == 0
        assert discount.max_uses == 1
        assert discount.user_id == user_id
        assert discount.ledger_entry_id is not None

        assert await _balance(session, user_id) == 50
        assert await LedgerStore(session).sum_for_user(user_id) == 50


@pytest.mark.asyncio
async def test_redeem_points_with_insufficient_balance(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 100)
        service = LoyaltyService(session, loyalty_policy)

        result = await service.redeem_points(user_id, 250, "req-1")

        assert not result.ok
        assert result.error_kind == "insufficient_balance"
        assert await _balance(session, user_id) == 100
        assert await session.scalar(select(func.count(DiscountCode.id))) == 0
        assert await LedgerStore(session).sum_for_user(user_id) == 100


@pytest.mark.asyncio
@pytest.mark.parametrize("points", [0, -250, 300])
async def test_redeem_points_rejects_amounts_outside_table(
    session_factory, loyalty_policy, seed_points, points
) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 1000)
        result = await LoyaltyService(session, loyalty_policy).redeem_points(user_id, points, "req-1")

        assert result.error_kind == "invalid_redemption_amount"
        assert await _balance(session, user_id) == 1000


@pytest.mark.asyncio
async def test_redeem_points_requires_member(session_factory, loyalty_policy) -> None:
    async with session_factory() as session:
        result = await LoyaltyService(session, loyalty_policy).redeem_points(None, 250, "req-1")

    assert result.error_kind == "not_authenticated"


@pytest.mark.asyncio
async def test_replayed_request_returns_original_code(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 600)
        service = LoyaltyService(session, loyalty_policy)

        first = await service.redeem_points(user_id, 250, "req-1")
        second = await service.redeem_points(user_id, 250, "req-1")

        assert first.ok and second.ok
        assert second.data["code"] == first.data["code"]
        assert second.data["replayed"] is True
        assert second.data["total_points"] == 350
        assert await _balance(session, user_id) == 350
        assert await session.scalar(select(func.count(DiscountCode.id))) == 1


@pytest.mark.asyncio
async def test_failed_code_creation_restores_points(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 300)
        session.add(
            DiscountCode(
                code="REWARD-TAKEN",
                value_cents=100,
                valid_until=datetime.now(timezone.utc) + timedelta(days=1),
            )
        )
        await session.commit()

        failing = LoyaltyService(session, loyalty_policy, discount_code_factory=lambda prefix: "REWARD-TAKEN")
        result = await failing.redeem_points(user_id, 250, "req-1")

        assert not result.ok
        assert result.error_kind == "redemption_failed"
        assert result.retryable is True
        assert await _balance(session, user_id) == 300
        assert await LedgerStore(session).sum_for_user(user_id) == 300

        amounts = (
            await session.execute(
                select(LoyaltyLedgerEntry.amount)
                .where(
                    LoyaltyLedgerEntry.user_id == user_id,
                    LoyaltyLedgerEntry.event_type == LedgerEventType.REDEMPTION,
                )
                .order_by(LoyaltyLedgerEntry.amount)
            )
        ).scalars().all()
        assert amounts == [-250, 250]

        replay = await failing.redeem_points(user_id, 250, "req-1")
        assert replay.error_kind == "redemption_failed"
        assert await _balance(session, user_id) == 300

        retry = await LoyaltyService(session, loyalty_policy).redeem_points(user_id, 250, "req-2")
        assert retry.ok
        assert await _balance(session, user_id) == 50


@pytest.mark.asyncio
async def test_redemption_options_flag_affordable_amounts(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 600)
        result = await LoyaltyService(session, loyalty_policy).list_redemption_options(user_id)

    assert result.data["total_points"] == 600
    assert result.data["options"] == [
        {"points": 250, "value_cents": 500, "affordable": True},
        {"points": 500, "value_cents": 1100, "affordable": True},
        {"points": 1000, "value_cents": 2500, "affordable": False},
    ]


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(file_session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with file_session_factory() as session:
        await seed_points(session, user_id, 300)

    async def redeem(index: int):
        async with file_session_factory() as session:
            return await LoyaltyService(session, loyalty_policy).redeem_points(user_id, 250, f"req-{index}")

    results = await asyncio.gather(*(redeem(index) for index in range(8)))

    succeeded = [result for result in results if result.ok]
    assert len(succeeded) == 1
    assert {result.error_kind for result in results if not result.ok} == {"insufficient_balance"}

    async with file_session_factory() as session:
        assert await _balance(session, user_id) == 50
        assert await LedgerStore(session).sum_for_user(user_id) == 50
        assert await session.scalar(select(func.count(DiscountCode.id))) == 1


@pytest.mark.asyncio
async def test_concurrent_retries_of_one_request_debit_once(
    file_session_factory, loyalty_policy, seed_points
) -> None:
    user_id = uuid4()
    async with file_session_factory() as session:
        await seed_points(session, user_id, 1000)

    async def redeem():
        async with file_session_factory() as session:
            return await LoyaltyService(session, loyalty_policy).redeem_points(user_id, 250, "checkout-retry")

    results = await asyncio.gather(*(redeem() for _ in range(6)))

    succeeded = [result for result in results if result.ok]
    assert succeeded
    assert {result.error_kind for result in results if not result.ok} <= {"redemption_pending"}
    codes = {result.data["code"] for result in succeeded}
    assert len(codes) == 1

    async with file_session_factory() as session:
        assert await _balance(session, user_id) == 750
        assert await LedgerStore(session).sum_for_user(user_id) == 750
        issued = (await session.execute(select(DiscountCode.code))).scalars().all()
        assert issued == list(codes)


@pytest.mark.asyncio
async def test_retry_before_code_is_issued_reports_pending(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 300)
        # A first attempt that has committed its debit but not yet inserted the discount row.
        await BalanceProjector(session, loyalty_policy.tiers).apply(user_id, -250)
        await LedgerStore(session).append(
            user_id=user_id,
            event_type=LedgerEventType.REDEMPTION,
            amount=-250,
            idempotency_key=redemption_key(user_id, "req-1"),
            metadata={
                "request_id": "req-1",
                "discount_code": "REWARD-INFLIGHT",
                "value_cents": 500,
                "valid_until": (datetime.now(timezone.utc) + timedelta(days=30)).isoformat(),
            },
        )
        await session.commit()

        service = LoyaltyService(session, loyalty_policy)
        retry = await service.redeem_points(user_id, 250, "req-1")

        assert not retry.ok
        assert retry.error_kind == "redemption_pending"
        assert retry.retryable is True
        assert await _balance(session, user_id) == 50
        assert await session.scalar(select(func.count(DiscountCode.id))) == 0

        entry = await LedgerStore(session).get_by_key(redemption_key(user_id, "req-1"))
        session.add(
            DiscountCode(
                code="REWARD-INFLIGHT",
                discount_type="fixed",
                value_cents=500,
                min_order_cents=0,
                max_uses=1,
                valid_until=datetime.now(timezone.utc) + timedelta(days=30),
                user_id=user_id,
                ledger_entry_id=entry.id,
            )
        )
        await session.commit()

        issued = await service.redeem_points(user_id, 250, "req-1")
        assert issued.ok
        assert issued.data["code"] == "REWARD-INFLIGHT"
        assert issued.data["replayed"] is True
        assert issued.data["value_cents"] == 500
        assert await _balance(session, user_id) == 50


@pytest.mark.asyncio
async def test_replay_requires_code_linked_to_the_debit(session_factory, loyalty_policy, seed_points) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        await seed_points(session, user_id, 300)
        session.add(
            DiscountCode(
                code="REWARD-OTHER",
                value_cents=500,
                valid_until=datetime.now(timezone.utc) + timedelta(days=1),
            )
        )
        await BalanceProjector(session, loyalty_policy.tiers).apply(user_id, -250)
        await LedgerStore(session).append(
            user_id=user_id,
            event_type=LedgerEventType.REDEMPTION,
            amount=-250,
            idempotency_key=redemption_key(user_id, "req-1"),
            metadata={"request_id": "req-1", "discount_code": "REWARD-OTHER", "value_cents": 500},
        )
        await session.commit()

        retry = await LoyaltyService(session, loyalty_policy).redeem_points(user_id, 250, "req-1")

    assert retry.error_kind == "redemption_pending"
