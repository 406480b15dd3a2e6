"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    Badge,
    BadgeCriterion,
    DiscountCode,
    LedgerEventType,
    LoyaltyLedgerEntry,
    Referral,
    ReferralCode,
    UserBadge,
)
from .user import MembershipTier, UserProfile  # noqa: F401
