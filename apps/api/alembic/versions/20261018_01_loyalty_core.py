"""Loyalty ledger, profiles, badges, referrals and discount codes.

Revision ID: 20261018_01
Revises: 
Create Date: 2026-10-18
"""

from typing import Sequence, Union
from uuid import uuid4

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LEDGER_EVENT_TYPES = ("purchase", "referral", "birthday", "badge", "redemption")
BADGE_CRITERIA = ("order_count", "referral_count", "total_points", "total_spent", "tier", "profile_complete")

STARTER_BADGES = (
    ("first_purchase", "First order", "Complete your first order", "order_count", 1),
    ("profile_complete", "Profile complete", "Add a display name to your profile", "profile_complete", 1),
    ("five_orders", "Regular", "Place 5 orders", "order_count", 5),
    ("ten_orders", "Loyal customer", "Place 10 orders", "order_count", 10),
    ("first_referral", "Ambassador", "Refer a friend who completes an order", "referral_count", 1),
)


def _uuid() -> sa.types.TypeEngine:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("birthday", sa.Date(), nullable=True),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(length=16), nullable=False, server_default="bronze"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("total_points >= 0", name="ck_user_profiles_total_points_non_negative"),
    )

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "user_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "event_type",
            sa.Enum(*LEDGER_EVENT_TYPES, name="loyalty_ledger_event_type"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_loyalty_ledger_entries_idempotency_key"),
    )
    op.create_index("ix_loyalty_ledger_entries_user_id", "loyalty_ledger_entries", ["user_id"])

    op.create_table(
        "badges",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("icon", sa.String(), nullable=True),
        sa.Column("criterion", sa.Enum(*BADGE_CRITERIA, name="badge_criterion"), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("points_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_badges_code", "badges", ["code"], unique=True)
    badges_table = sa.table(
        "badges",
        sa.column("id", _uuid()),
        sa.column("code", sa.String()),
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("criterion", sa.Enum(*BADGE_CRITERIA, name="badge_criterion")),
        sa.column("threshold", sa.Integer()),
    )
    op.bulk_insert(
        badges_table,
        [
            {
                "id": uuid4(),
                "code": code,
                "name": name,
                "description": description,
                "criterion": criterion,
                "threshold": threshold,
            }
            for code, name, description, criterion, threshold in STARTER_BADGES
        ],
    )

    op.create_table(
        "user_badges",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "user_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("badge_id", _uuid(), sa.ForeignKey("badges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("awarded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "badge_id", name="uq_user_badges_user_badge"),
    )
    op.create_index("ix_user_badges_user_id", "user_badges", ["user_id"])

    op.create_table(
        "referral_codes",
        sa.Column(
            "user_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_referral_codes_code", "referral_codes", ["code"], unique=True)

    op.create_table(
        "referrals",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "referrer_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referred_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("first_order_id", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("referrer_rewarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("referred_id", name="uq_referrals_referred_id"),
    )
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])

    op.create_table(
        "discount_codes",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount_type", sa.String(length=16), nullable=False, server_default="fixed"),
        sa.Column("value_cents", sa.Integer(), nullable=False),
        sa.Column("min_order_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("times_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "user_id",
            _uuid(),
            sa.ForeignKey("user_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "ledger_entry_id",
            _uuid(),
            sa.ForeignKey("loyalty_ledger_entries.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_discount_codes_code", "discount_codes", ["code"], unique=True)
    op.create_index("ix_discount_codes_user_id", "discount_codes", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_discount_codes_user_id", table_name="discount_codes")
    op.drop_index("ix_discount_codes_code", table_name="discount_codes")
    op.drop_table("discount_codes")
    op.drop_index("ix_referrals_referrer_id", table_name="referrals")
    op.drop_table("referrals")
    op.drop_index("ix_referral_codes_code", table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_index("ix_user_badges_user_id", table_name="user_badges")
    op.drop_table("user_badges")
    op.drop_index("ix_badges_code", table_name="badges")
    op.drop_table("badges")
    op.drop_index("ix_loyalty_ledger_entries_user_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_table("user_profiles")
    sa.Enum(name="badge_criterion").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="loyalty_ledger_event_type").drop(op.get_bind(), checkfirst=True)
