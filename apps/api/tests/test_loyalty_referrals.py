import asyncio
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select

from loyalty_api.models.loyalty import BadgeCriterion, LedgerEventType, LoyaltyLedgerEntry, Referral
from loyalty_api.models.user import UserProfile
from loyalty_api.services.loyalty import (
    CodeGenerationExhausted,
    LoyaltyService,
    ReferralService,
    generate_referral_code,
)
from loyalty_api.services.loyalty.referrals import REFERRAL_CODE_ALPHABET


def _fixed_codes(*codes: str):
    remaining = list(codes)

    def generator(length: int) -> str:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return generator


def test_generated_codes_use_uppercase_alphanumerics() -> None:
    code = generate_referral_code(10)

    assert len(code) == 10
    assert set(code) <= set(REFERRAL_CODE_ALPHABET)


@pytest.mark.asyncio
async def test_referral_code_is_stable_across_calls(session_factory, loyalty_policy) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        service = LoyaltyService(session, loyalty_policy)

        first = await service.get_or_create_referral_code(user_id)
        second = await service.get_or_create_referral_code(user_id)

        assert first.ok and second.ok
        assert first.data["code"] == second.data["code"]
        assert len(first.data["code"]) == loyalty_policy.referral_code_length
        assert first.data["link"].endswith(f"?ref={first.data['code']}")


@pytest.mark.asyncio
async def test_referral_code_retries_after_collision(session_factory, loyalty_policy) -> None:
    owner, newcomer = uuid4(), uuid4()
    async with session_factory() as session:
        taken = await LoyaltyService(
            session, loyalty_policy, referral_code_generator=_fixed_codes("TAKEN00000")
        ).get_or_create_referral_code(owner)
        assert taken.data["code"] == "TAKEN00000"

        result = await LoyaltyService(
            session, loyalty_policy, referral_code_generator=_fixed_codes("TAKEN00000", "FRESH00000")
        ).get_or_create_referral_code(newcomer)

        assert result.ok
        assert result.data["code"] == "FRESH00000"


@pytest.mark.asyncio
async def test_referral_code_generation_exhaustion(session_factory, loyalty_policy) -> None:
    owner, newcomer = uuid4(), uuid4()
    async with session_factory() as session:
        await LoyaltyService(
            session, loyalty_policy, referral_code_generator=_fixed_codes("TAKEN00000")
        ).get_or_create_referral_code(owner)

        result = await LoyaltyService(
            session, loyalty_policy, referral_code_generator=_fixed_codes("TAKEN00000")
        ).get_or_create_referral_code(newcomer)

        assert not result.ok
        assert result.error_kind == "code_generation_exhausted"
        assert result.retryable is True


@pytest.mark.asyncio
async def test_referral_service_raises_when_attempts_run_out(session_factory, loyalty_policy) -> None:
    owner, newcomer = uuid4(), uuid4()
    async with session_factory() as session:
        referrals = ReferralService(session, max_attempts=2, code_generator=lambda length: "SAMECODE00")
        await referrals.get_or_create_code(owner)

        with pytest.raises(CodeGenerationExhausted):
            await referrals.get_or_create_code(newcomer)


@pytest.mark.asyncio
async def test_referral_rewards_referrer_exactly_once(
    session_factory, loyalty_policy, seed_badge
) -> None:
    referrer, referred = uuid4(), uuid4()
    async with session_factory() as session:
        await seed_badge(session, "first_referral", BadgeCriterion.REFERRAL_COUNT, points_reward=0)
        service = LoyaltyService(session, loyalty_policy, referral_code_generator=_fixed_codes("ABCD123XYZ"))

        code = await service.get_or_create_referral_code(referrer)
        assert code.data["code"] == "ABCD123XYZ"

        linked = await service.link_referral(referred, "ABCD123XYZ")
        assert linked.ok
        assert linked.data["linked"] is True
        assert linked.data["referrer_id"] == str(referrer)

        completed = await service.complete_referral(referred, "order-1")
        assert completed.ok
        assert completed.data["completed"] is True
        assert completed.data["points_awarded"] == loyalty_policy.referral_reward_points

        again = await service.complete_referral(referred, "order-2")
        assert again.ok
        assert again.data["completed"] is False

        referral = (
            await session.execute(select(Referral).where(Referral.referred_id == referred))
        ).scalar_one()
        await session.refresh(referral)
        assert referral.first_order_id == "order-1"
        assert referral.referrer_rewarded_at is not None

        reward_entries = await session.scalar(
            select(func.count(LoyaltyLedgerEntry.id)).where(
                LoyaltyLedgerEntry.user_id == referrer,
                LoyaltyLedgerEntry.event_type == LedgerEventType.REFERRAL,
            )
        )
        assert reward_entries == 1

        profile = await session.get(UserProfile, referrer, populate_existing=True)
        assert profile.total_points == loyalty_policy.referral_reward_points

        stats = await service.get_referral_stats(referrer)
        assert stats.data == {"total_referred": 1, "completed_first_purchase": 1}

        badges = await service.list_badges(referrer)
        assert [badge["code"] for badge in badges.data["badges"] if badge["earned"]] == ["first_referral"]


@pytest.mark.asyncio
async def test_award_xp_for_referral_is_idempotent(session_factory, loyalty_policy) -> None:
    referrer, referred, stranger = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        service = LoyaltyService(session, loyalty_policy)
        code = (await service.get_or_create_referral_code(referrer)).data["code"]
        linked = await service.link_referral(referred, code)
        referral_id = UUID(linked.data["referral_id"])

        first = await service.award_xp_for_referral(referrer, referral_id)
        second = await service.award_xp_for_referral(referrer, referral_id)
        foreign = await service.award_xp_for_referral(stranger, referral_id)

        assert first.ok and first.data["points"] == loyalty_policy.referral_reward_points
        assert second.ok and second.data["duplicate"] is True
        assert not foreign.ok
        assert foreign.error_kind == "referral_not_found"

        completed = await service.complete_referral(referred, "order-9")
        assert completed.data["completed"] is True
        assert completed.data["points_awarded"] == 0

        profile = await session.get(UserProfile, referrer, populate_existing=True)
        assert profile.total_points == loyalty_policy.referral_reward_points


@pytest.mark.asyncio
async def test_link_rejects_self_referral_and_unknown_codes(session_factory, loyalty_policy) -> None:
    member = uuid4()
    async with session_factory() as session:
        service = LoyaltyService(session, loyalty_policy)
        code = (await service.get_or_create_referral_code(member)).data["code"]

        self_referral = await service.link_referral(member, code)
        unknown = await service.link_referral(uuid4(), "NOSUCHCODE")

        assert self_referral.error_kind == "referral_not_found"
        assert unknown.error_kind == "referral_not_found"


@pytest.mark.asyncio
async def test_first_link_wins(session_factory, loyalty_policy) -> None:
    first_referrer, second_referrer, referred = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        service = LoyaltyService(session, loyalty_policy)
        first_code = (await service.get_or_create_referral_code(first_referrer)).data["code"]
        second_code = (await service.get_or_create_referral_code(second_referrer)).data["code"]

        first = await service.link_referral(referred, first_code)
        second = await service.link_referral(referred, second_code)

        assert first.data["linked"] is True
        assert second.data["linked"] is False
        assert second.data["referrer_id"] == str(first_referrer)


@pytest.mark.asyncio
async def test_concurrent_completions_reward_once(file_session_factory, loyalty_policy) -> None:
    referrer, referred = uuid4(), uuid4()
    async with file_session_factory() as session:
        service = LoyaltyService(session, loyalty_policy)
        code = (await service.get_or_create_referral_code(referrer)).data["code"]
        await service.link_referral(referred, code)

    async def complete(order_id: str):
        async with file_session_factory() as session:
            return await LoyaltyService(session, loyalty_policy).complete_referral(referred, order_id)

    results = await asyncio.gather(*(complete(f"order-{index}") for index in range(10)))

    assert all(result.ok for result in results)
    assert sum(1 for result in results if result.data["completed"]) == 1

    async with file_session_factory() as session:
        profile = await session.get(UserProfile, referrer)
        assert profile.total_points == loyalty_policy.referral_reward_points
