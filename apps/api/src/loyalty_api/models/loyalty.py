"""Loyalty ledger, badge, referral and redemption models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_api.db.base import Base


class LedgerEventType(str, Enum):
    """Events that move a member's point balance."""

    PURCHASE = "purchase"
    REFERRAL = "referral"
    BIRTHDAY = "birthday"
    BADGE = "badge"
    REDEMPTION = "redemption"


class LoyaltyLedgerEntry(Base):
    """Immutable signed record of one point-affecting event."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_loyalty_ledger_entries_idempotency_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(
        SqlEnum(
            LedgerEventType,
            name="loyalty_ledger_event_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    idempotency_key = Column(String, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
    )


class BadgeCriterion(str, Enum):
    """Derived user stats a badge can be gated on."""

    ORDER_COUNT = "order_count"
    REFERRAL_COUNT = "referral_count"
    TOTAL_POINTS = "total_points"
    TOTAL_SPENT = "total_spent"
    TIER = "tier"
    PROFILE_COMPLETE = "profile_complete"


class Badge(Base):
    """Achievement badge in the catalog."""

    __tablename__ = "badges"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String, nullable=True)
    criterion = Column(
        SqlEnum(
            BadgeCriterion,
            name="badge_criterion",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    threshold = Column(Integer, nullable=False, default=1, server_default="1")
    points_reward = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserBadge(Base):
    """Badge ownership; binary and permanent once granted."""

    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badges_user_badge"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    badge_id = Column(UUID(as_uuid=True), ForeignKey("badges.id", ondelete="CASCADE"), nullable=False)
    awarded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    badge = relationship("Badge")


class ReferralCode(Base):
    """A member's shareable referral code, created lazily."""

    __tablename__ = "referral_codes"

    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        primary_key=True,
    )
    code = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Referral(Base):
    """Referred user linked to their referrer."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referred_id", name="uq_referrals_referred_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    referral_code = Column(String, nullable=False)
    # Set at most once, by a conditional update guarded on IS NULL.
    first_order_id = Column(String, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    referrer_rewarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class DiscountCode(Base):
    """Single-use fixed discount minted by a points redemption."""

    __tablename__ = "discount_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    discount_type = Column(String(length=16), nullable=False, default="fixed", server_default="fixed")
    value_cents = Column(Integer, nullable=False)
    min_order_cents = Column(Integer, nullable=False, default=0, server_default="0")
    max_uses = Column(Integer, nullable=False, default=1, server_default="1")
    times_used = Column(Integer, nullable=False, default=0, server_default="0")
    valid_until = Column(DateTime(timezone=True), nullable=False)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    ledger_entry_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_ledger_entries.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
