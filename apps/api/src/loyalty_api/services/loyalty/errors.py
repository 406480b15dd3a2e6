"""Error taxonomy for loyalty operations."""

from __future__ import annotations


class LoyaltyError(RuntimeError):
    """Base exception for loyalty failures; ``kind`` is the stable wire identifier."""

    kind = "loyalty_error"
    retryable = False
    default_message = "Loyalty operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class NotAuthenticated(LoyaltyError):
    kind = "not_authenticated"
    default_message = "Not authenticated"


class InvalidRedemptionAmount(LoyaltyError):
    kind = "invalid_redemption_amount"
    default_message = "Invalid redemption amount"

    def __init__(self, points: int) -> None:
        super().__init__(f"{points} points is not a redeemable amount")
        self.points = points


class InsufficientBalance(LoyaltyError):
    kind = "insufficient_balance"
    default_message = "Insufficient points"

    def __init__(self, user_id: object, delta: int) -> None:
        super().__init__(self.default_message)
        self.user_id = user_id
        self.delta = delta


class InvalidPurchaseAmount(LoyaltyError):
    kind = "invalid_purchase_amount"
    default_message = "Order total is out of range"


class InvalidCursor(LoyaltyError):
    kind = "invalid_cursor"
    default_message = "Invalid ledger cursor"


class InvalidBirthday(LoyaltyError):
    kind = "invalid_birthday"
    default_message = "Birthday cannot be in the future"


class DuplicateEvent(LoyaltyError):
    """Idempotent replay of an already-applied event; not user facing."""

    kind = "duplicate_event"
    default_message = "Event already applied"


class CodeGenerationExhausted(LoyaltyError):
    kind = "code_generation_exhausted"
    retryable = True
    default_message = "Failed to create referral code"


class ReferralNotFound(LoyaltyError):
    kind = "referral_not_found"
    default_message = "Referral code not found"


class RedemptionFailed(LoyaltyError):
    kind = "redemption_failed"
    retryable = True
    default_message = "Redemption could not be completed, please try again"


class RedemptionPending(LoyaltyError):
    """The request's debit is recorded but its discount code is not issued yet."""

    kind = "redemption_pending"
    retryable = True
    default_message = "Redemption is still being processed, please retry shortly"


class StoreRejected(LoyaltyError):
    kind = "store_rejected"
    default_message = "Loyalty store rejected the change"


class StoreUnavailable(LoyaltyError):
    kind = "store_unavailable"
    retryable = True
    default_message = "Loyalty store temporarily unavailable"


__all__ = [
    "CodeGenerationExhausted",
    "DuplicateEvent",
    "InsufficientBalance",
    "InvalidBirthday",
    "InvalidCursor",
    "InvalidPurchaseAmount",
    "InvalidRedemptionAmount",
    "LoyaltyError",
    "NotAuthenticated",
    "RedemptionFailed",
    "RedemptionPending",
    "ReferralNotFound",
    "StoreRejected",
    "StoreUnavailable",
]
