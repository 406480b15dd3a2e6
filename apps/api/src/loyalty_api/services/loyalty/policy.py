"""Tier thresholds, earning rules and the redemption table."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from loyalty_api.core.settings import Settings
from loyalty_api.models.user import MembershipTier

# Keeps per-order points well inside a 32-bit balance column.
MAX_ORDER_TOTAL_CENTS = 1_000_000_000


@dataclass(frozen=True, slots=True)
class TierProgress:
    """Where a balance sits inside its tier band."""

    tier: MembershipTier
    next_tier: MembershipTier | None
    points_to_next_tier: int | None
    percent: int


@dataclass(frozen=True, slots=True)
class TierPolicy:
    """Monotonic mapping from cumulative points to a membership tier."""

    thresholds: tuple[tuple[MembershipTier, int], ...]

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, int]) -> "TierPolicy":
        resolved: list[tuple[MembershipTier, int]] = []
        for tier in MembershipTier:
            if tier.value not in mapping:
                raise ValueError(f"Missing threshold for tier '{tier.value}'")
            resolved.append((tier, int(mapping[tier.value])))

        unknown = set(mapping) - {tier.value for tier in MembershipTier}
        if unknown:
            raise ValueError(f"Unknown tiers in threshold table: {sorted(unknown)}")
        if resolved[0][1] != 0:
            raise ValueError("The lowest tier must start at 0 points")
        for (_, previous), (tier, threshold) in zip(resolved, resolved[1:]):
            if threshold < previous:
                raise ValueError(f"Threshold for '{tier.value}' is below the previous tier")
        return cls(thresholds=tuple(resolved))

    def tier_for_points(self, total: int) -> MembershipTier:
        for tier, threshold in reversed(self.thresholds):
            if total >= threshold:
                return tier
        return self.thresholds[0][0]

    def threshold_for(self, tier: MembershipTier) -> int:
        return dict(self.thresholds)[tier]

    def progress(self, total: int) -> TierProgress:
        tier = self.tier_for_points(total)
        tiers = [entry for entry, _ in self.thresholds]
        index = tiers.index(tier)
        if index >= len(tiers) - 1:
            return TierProgress(tier=tier, next_tier=None, points_to_next_tier=None, percent=100)

        next_tier = tiers[index + 1]
        floor = self.threshold_for(tier)
        ceiling = self.threshold_for(next_tier)
        band = max(ceiling - floor, 1)
        percent = min(100, round((total - floor) * 100 / band))
        return TierProgress(
            tier=tier,
            next_tier=next_tier,
            points_to_next_tier=max(0, ceiling - total),
            percent=percent,
        )


@dataclass(frozen=True, slots=True)
class LoyaltyPolicy:
    """Immutable earning and redemption configuration handed to services."""

    tiers: TierPolicy
    points_per_currency_unit: int = 1
    min_purchase_points: int = 10
    referral_reward_points: int = 500
    birthday_bonus_points: int = 50
    redemption_table: Mapping[int, int] = field(default_factory=dict)
    discount_valid_days: int = 30
    discount_code_prefix: str = "REWARD"
    referral_code_length: int = 10
    referral_code_max_attempts: int = 3
    referral_link_base_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoyaltyPolicy":
        return cls(
            tiers=TierPolicy.from_mapping(settings.loyalty_tier_thresholds),
            points_per_currency_unit=settings.loyalty_points_per_currency_unit,
            min_purchase_points=settings.loyalty_min_purchase_points,
            referral_reward_points=settings.loyalty_referral_reward_points,
            birthday_bonus_points=settings.loyalty_birthday_bonus_points,
            redemption_table=dict(sorted(settings.loyalty_redemption_table.items())),
            discount_valid_days=settings.loyalty_discount_valid_days,
            discount_code_prefix=settings.loyalty_discount_code_prefix,
            referral_code_length=settings.referral_code_length,
            referral_code_max_attempts=settings.referral_code_max_attempts,
            referral_link_base_url=settings.referral_link_base_url,
        )

    def points_for_purchase(self, total_cents: int) -> int:
        """Currency units times the earn rate, rounded half up and floored at the purchase minimum."""

        if total_cents <= 0:
            return 0
        earned = (total_cents * self.points_per_currency_unit + 50) // 100
        return max(self.min_purchase_points, earned)

    def discount_cents_for(self, points: int) -> int | None:
        return self.redemption_table.get(points)

    def referral_link(self, code: str) -> str:
        return f"{self.referral_link_base_url}?ref={code}"
