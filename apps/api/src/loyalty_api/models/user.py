from enum import Enum
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, Date, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.db.base import Base


class MembershipTier(str, Enum):
    """Membership levels in ascending order."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    VIP = "vip"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MembershipTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, MembershipTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, MembershipTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, MembershipTier):
            return NotImplemented
        return self.rank >= other.rank


_TIER_ORDER = list(MembershipTier)


class UserProfile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (
        CheckConstraint("total_points >= 0", name="ck_user_profiles_total_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    display_name = Column(String, nullable=True)
    birthday = Column(Date, nullable=True)
    # Written only through BalanceProjector.apply.
    total_points = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        String(length=16),
        nullable=False,
        default=MembershipTier.BRONZE.value,
        server_default=MembershipTier.BRONZE.value,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
