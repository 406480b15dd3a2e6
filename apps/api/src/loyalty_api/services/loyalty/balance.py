"""Atomic balance and tier projection."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.upsert import insert_ignoring_conflicts
from loyalty_api.models.user import MembershipTier, UserProfile

from .errors import InsufficientBalance
from .policy import TierPolicy


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    total_points: int
    tier: MembershipTier


class BalanceProjector:
    """Applies a signed delta to a profile in one conditional UPDATE.

    The balance check, the increment and the tier recomputation happen in the
    same statement, so concurrent debits can never both pass the check and
    the stored tier always matches the stored balance.
    """

    def __init__(self, db_session: AsyncSession, tiers: TierPolicy) -> None:
        self._db = db_session
        self._tiers = tiers

    async def ensure_account(self, user_id: UUID) -> None:
        """Create an empty profile row if the user has none yet."""

        stmt = insert_ignoring_conflicts(
            self._db,
            UserProfile,
            {
                "id": user_id,
                "total_points": 0,
                "tier": self._tiers.tier_for_points(0).value,
            },
            conflict_columns=["id"],
        )
        await self._db.execute(stmt)

    async def apply(self, user_id: UUID, delta: int) -> BalanceSnapshot:
        new_total = UserProfile.total_points + delta
        stmt = (
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .where(new_total >= 0)
            .values(total_points=new_total, tier=self._tier_case(new_total))
            .returning(UserProfile.total_points, UserProfile.tier)
            .execution_options(synchronize_session=False)
        )
        row = (await self._db.execute(stmt)).one_or_none()
        if row is None:
            logger.info("Balance delta rejected", user_id=str(user_id), delta=delta)
            raise InsufficientBalance(user_id, delta)

        snapshot = BalanceSnapshot(total_points=int(row[0]), tier=MembershipTier(row[1]))
        logger.info(
            "Applied balance delta",
            user_id=str(user_id),
            delta=delta,
            total_points=snapshot.total_points,
            tier=snapshot.tier.value,
        )
        return snapshot

    def _tier_case(self, points_expr):
        whens = [
            (points_expr >= threshold, tier.value)
            for tier, threshold in reversed(self._tiers.thresholds[1:])
        ]
        return case(*whens, else_=self._tiers.thresholds[0][0].value)
