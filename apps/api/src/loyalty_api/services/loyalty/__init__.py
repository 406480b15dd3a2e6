"""Loyalty service exports."""

from .badges import BadgeEvaluator, BadgeStats, BadgeStore, SqlBadgeStore  # noqa: F401
from .balance import BalanceProjector, BalanceSnapshot  # noqa: F401
from .errors import (  # noqa: F401
    CodeGenerationExhausted,
    DuplicateEvent,
    InsufficientBalance,
    InvalidBirthday,
    InvalidCursor,
    InvalidPurchaseAmount,
    InvalidRedemptionAmount,
    LoyaltyError,
    NotAuthenticated,
    RedemptionFailed,
    RedemptionPending,
    ReferralNotFound,
    StoreRejected,
    StoreUnavailable,
)
from .ledger import LedgerAppend, LedgerStore, decode_ledger_cursor, encode_ledger_cursor  # noqa: F401
from .loyalty_service import LoyaltyService  # noqa: F401
from .policy import MAX_ORDER_TOTAL_CENTS, LoyaltyPolicy, TierPolicy, TierProgress  # noqa: F401
from .redemptions import RedemptionEngine, RedemptionReceipt, redemption_key  # noqa: F401
from .referrals import ReferralService, generate_referral_code  # noqa: F401
from .results import LoyaltyResult  # noqa: F401
