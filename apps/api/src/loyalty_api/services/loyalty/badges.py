"""Idempotent achievement badge evaluation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.upsert import insert_ignoring_conflicts
from loyalty_api.models.loyalty import (
    Badge,
    BadgeCriterion,
    LedgerEventType,
    LoyaltyLedgerEntry,
    Referral,
    UserBadge,
)
from loyalty_api.models.user import MembershipTier, UserProfile


@dataclass(frozen=True, slots=True)
class BadgeStats:
    """Derived member stats that badge criteria are evaluated against."""

    order_count: int
    referral_count: int
    total_points: int
    tier: MembershipTier
    profile_complete: bool
    total_spent_cents: int = 0


class BadgeStore(Protocol):
    """The only store capabilities the evaluator needs."""

    async def list_catalog(self) -> Sequence[Badge]:
        ...

    async def owned_badge_ids(self, user_id: UUID) -> set[UUID]:
        ...

    async def grant(self, user_id: UUID, badge_id: UUID) -> bool:
        """Insert ownership; True only for the call that created the row."""
        ...

    async def load_stats(self, user_id: UUID) -> BadgeStats | None:
        ...


def criterion_met(badge: Badge, stats: BadgeStats) -> bool:
    threshold = int(badge.threshold or 0)
    criterion = badge.criterion
    if criterion == BadgeCriterion.ORDER_COUNT:
        return stats.order_count >= threshold
    if criterion == BadgeCriterion.REFERRAL_COUNT:
        return stats.referral_count >= threshold
    if criterion == BadgeCriterion.TOTAL_POINTS:
        return stats.total_points >= threshold
    if criterion == BadgeCriterion.TOTAL_SPENT:
        return stats.total_spent_cents >= threshold
    if criterion == BadgeCriterion.TIER:
        return stats.tier.rank >= threshold
    if criterion == BadgeCriterion.PROFILE_COMPLETE:
        return stats.profile_complete
    return False


class SqlBadgeStore:
    """BadgeStore backed by the loyalty tables."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def list_catalog(self) -> Sequence[Badge]:
        stmt = select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.code.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def owned_badge_ids(self, user_id: UUID) -> set[UUID]:
        stmt = select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
        result = await self._db.execute(stmt)
        return set(result.scalars().all())

    async def grant(self, user_id: UUID, badge_id: UUID) -> bool:
        stmt = insert_ignoring_conflicts(
            self._db,
            UserBadge,
            {"user_id": user_id, "badge_id": badge_id},
            conflict_columns=["user_id", "badge_id"],
        ).returning(UserBadge.id)
        inserted = (await self._db.execute(stmt)).scalar_one_or_none()
        return inserted is not None

    async def load_stats(self, user_id: UUID) -> BadgeStats | None:
        profile = await self._db.get(UserProfile, user_id, populate_existing=True)
        if profile is None:
            return None

        purchases = (
            await self._db.execute(
                select(
                    func.count(LoyaltyLedgerEntry.id),
                    func.coalesce(func.sum(LoyaltyLedgerEntry.metadata_json["total_cents"].as_integer()), 0),
                ).where(
                    LoyaltyLedgerEntry.user_id == user_id,
                    LoyaltyLedgerEntry.event_type == LedgerEventType.PURCHASE,
                )
            )
        ).one()
        order_count, total_spent = purchases
        referral_count = await self._db.scalar(
            select(func.count(Referral.id)).where(
                Referral.referrer_id == user_id,
                Referral.first_order_id.is_not(None),
            )
        )
        return BadgeStats(
            order_count=int(order_count or 0),
            referral_count=int(referral_count or 0),
            total_points=int(profile.total_points or 0),
            tier=MembershipTier(profile.tier),
            profile_complete=bool((profile.display_name or "").strip()),
            total_spent_cents=int(total_spent or 0),
        )


GrantHook = Callable[[UUID, Badge], Awaitable[None]]


class BadgeEvaluator:
    """Grants every catalog badge whose criterion holds and is not yet owned.

    Ownership is an insert-if-absent on ``(user_id, badge_id)``, so redundant
    or concurrent runs never grant twice and only the winning run fires
    ``on_grant``. Passes repeat while newly granted badges carry points,
    since those points may unlock further badges.
    """

    def __init__(self, store: BadgeStore, *, on_grant: GrantHook | None = None, max_passes: int = 5) -> None:
        self._store = store
        self._on_grant = on_grant
        self._max_passes = max_passes

    async def evaluate(self, user_id: UUID) -> list[Badge]:
        catalog = await self._store.list_catalog()
        if not catalog:
            return []

        granted: list[Badge] = []
        for _ in range(self._max_passes):
            stats = await self._store.load_stats(user_id)
            if stats is None:
                logger.debug("Skipping badge evaluation for unknown profile", user_id=str(user_id))
                return granted

            owned = await self._store.owned_badge_ids(user_id)
            newly_granted: list[Badge] = []
            for badge in catalog:
                if badge.id in owned or not criterion_met(badge, stats):
                    continue
                if not await self._store.grant(user_id, badge.id):
                    continue
                logger.info("Granted badge", user_id=str(user_id), badge=badge.code)
                if self._on_grant is not None:
                    await self._on_grant(user_id, badge)
                newly_granted.append(badge)

            granted.extend(newly_granted)
            if not any(badge.points_reward for badge in newly_granted):
                break
        return granted
