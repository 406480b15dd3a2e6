"""Points-to-discount redemption saga."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.loyalty import DiscountCode, LedgerEventType, LoyaltyLedgerEntry
from loyalty_api.models.user import MembershipTier, UserProfile

from .balance import BalanceProjector
from .errors import InvalidRedemptionAmount, RedemptionFailed, RedemptionPending
from .ledger import LedgerStore
from .policy import LoyaltyPolicy

COMPENSATION_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class RedemptionReceipt:
    code: str
    points: int
    value_cents: int
    valid_until: datetime
    total_points: int
    tier: MembershipTier
    replayed: bool = False


def redemption_key(user_id: UUID, request_id: str) -> str:
    return f"redemption:{user_id}:{request_id}"


def reversal_key(idempotency_key: str) -> str:
    return f"{idempotency_key}:reversal"


class RedemptionEngine:
    """Converts points into a single-use fixed discount code.

    1. validate the amount against the redemption table (no writes)
    2. debit the balance through the projector and append the debit entry,
       keyed by the caller's request id, in one transaction
    3. mint the discount code
    4. if step 3 fails, append a reversing entry and credit the points back
       through the projector, then report ``RedemptionFailed``

    Whatever happens, the caller's balance ends up either debited together
    with a usable code, or unchanged.

    A retry of the same request id returns the issued code. Until that code
    exists the retry gets ``RedemptionPending``.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        policy: LoyaltyPolicy,
        *,
        ledger: LedgerStore | None = None,
        projector: BalanceProjector | None = None,
        code_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db_session
        self._policy = policy
        self._ledger = ledger or LedgerStore(db_session)
        self._projector = projector or BalanceProjector(db_session, policy.tiers)
        self._code_factory = code_factory or _default_discount_code
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def redeem(self, user_id: UUID, points: int, request_id: str) -> RedemptionReceipt:
        value_cents = self._policy.discount_cents_for(points)
        if value_cents is None:
            raise InvalidRedemptionAmount(points)

        key = redemption_key(user_id, request_id)
        existing = await self._ledger.get_by_key(key)
        if existing is not None:
            return await self._replay(existing)

        code = self._code_factory(self._policy.discount_code_prefix)
        valid_until = self._clock() + timedelta(days=self._policy.discount_valid_days)

        # The debit and its ledger entry commit together or not at all.
        try:
            balance = await self._projector.apply(user_id, -points)
            append = await self._ledger.append(
                user_id=user_id,
                event_type=LedgerEventType.REDEMPTION,
                amount=-points,
                idempotency_key=key,
                metadata={
                    "request_id": request_id,
                    "discount_code": code,
                    "value_cents": value_cents,
                    "valid_until": valid_until.isoformat(),
                },
            )
        except Exception:
            await self._db.rollback()
            raise

        if append.duplicate:
            # A concurrent retry of this request committed its debit first.
            await self._db.rollback()
            winner = await self._ledger.get_by_key(key)
            if winner is None:  # pragma: no cover - unique key row cannot vanish
                raise RedemptionFailed()
            return await self._replay(winner)
        await self._db.commit()

        try:
            discount = DiscountCode(
                code=code,
                discount_type="fixed",
                value_cents=value_cents,
                min_order_cents=0,
                max_uses=1,
                valid_until=valid_until,
                user_id=user_id,
                ledger_entry_id=append.entry.id,
            )
            self._db.add(discount)
            await self._db.flush()
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            logger.exception("Discount code creation failed", user_id=str(user_id), idempotency_key=key)
            await self._compensate(user_id, points, key)
            raise RedemptionFailed() from exc

        logger.info(
            "Redeemed loyalty points",
            user_id=str(user_id),
            points=points,
            value_cents=value_cents,
            total_points=balance.total_points,
        )
        return RedemptionReceipt(
            code=code,
            points=points,
            value_cents=value_cents,
            valid_until=valid_until,
            total_points=balance.total_points,
            tier=balance.tier,
        )

    async def _compensate(self, user_id: UUID, points: int, key: str) -> bool:
        """Credit the points back with a reversing entry; True once the reversal is durable."""

        for attempt in range(1, COMPENSATION_ATTEMPTS + 1):
            try:
                reversal = await self._ledger.append(
                    user_id=user_id,
                    event_type=LedgerEventType.REDEMPTION,
                    amount=points,
                    idempotency_key=reversal_key(key),
                    metadata={"reversal_of": key},
                )
                if reversal.duplicate:
                    await self._db.rollback()
                    return True
                await self._projector.apply(user_id, points)
                await self._db.commit()
            except SQLAlchemyError:
                await self._db.rollback()
                logger.exception(
                    "Redemption compensation attempt failed",
                    user_id=str(user_id),
                    idempotency_key=key,
                    attempt=attempt,
                )
                continue

            logger.warning(
                "Compensated failed redemption",
                user_id=str(user_id),
                points=points,
                idempotency_key=key,
            )
            return True

        logger.critical(
            "Redemption compensation exhausted; balance needs manual correction",
            user_id=str(user_id),
            points=points,
            idempotency_key=key,
        )
        return False

    async def _replay(self, entry: LoyaltyLedgerEntry) -> RedemptionReceipt:
        if await self._ledger.get_by_key(reversal_key(entry.idempotency_key)) is not None:
            raise RedemptionFailed("This redemption was reversed, please submit a new request")

        metadata = entry.metadata_json or {}
        code = metadata.get("discount_code")
        if not code:
            raise RedemptionFailed()

        discount = (
            await self._db.execute(
                select(DiscountCode).where(
                    DiscountCode.code == code,
                    DiscountCode.ledger_entry_id == entry.id,
                )
            )
        ).scalar_one_or_none()
        if discount is None:
            # Debited but not issued yet; the first attempt may still compensate.
            raise RedemptionPending()

        profile = await self._db.get(UserProfile, entry.user_id, populate_existing=True)
        logger.info("Replayed loyalty redemption", idempotency_key=entry.idempotency_key)
        return RedemptionReceipt(
            code=code,
            points=-int(entry.amount),
            value_cents=int(discount.value_cents),
            valid_until=discount.valid_until,
            total_points=int(profile.total_points) if profile else 0,
            tier=MembershipTier(profile.tier) if profile else MembershipTier.BRONZE,
            replayed=True,
        )


def _default_discount_code(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(4).upper()}"
