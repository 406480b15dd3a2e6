"""Service layer for loyalty points, tiers, badges, referrals and redemptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.loyalty import Badge, LedgerEventType, UserBadge
from loyalty_api.models.user import MembershipTier, UserProfile
from loyalty_api.observability.loyalty import LoyaltyObservabilityStore

from .badges import BadgeEvaluator, BadgeStore, SqlBadgeStore
from .balance import BalanceProjector, BalanceSnapshot
from .errors import (
    InvalidBirthday,
    InvalidCursor,
    InvalidPurchaseAmount,
    LoyaltyError,
    NotAuthenticated,
    ReferralNotFound,
    StoreRejected,
    StoreUnavailable,
)
from .ledger import LedgerStore, decode_ledger_cursor, encode_ledger_cursor
from .policy import MAX_ORDER_TOTAL_CENTS, LoyaltyPolicy
from .redemptions import RedemptionEngine
from .referrals import ReferralService, generate_referral_code
from .results import LoyaltyResult


@dataclass(frozen=True, slots=True)
class AwardOutcome:
    """Result of crediting a ledger event; ``balance`` is None for replays."""

    created: bool
    balance: BalanceSnapshot | None


class LoyaltyService:
    """Coordinates loyalty and referral domain workflows.

    Every public coroutine returns a ``LoyaltyResult``. Domain failures and
    store outages are converted into failed results and the session is
    rolled back, so nothing escapes to callers as an exception.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        policy: LoyaltyPolicy,
        *,
        telemetry: LoyaltyObservabilityStore | None = None,
        badge_store: BadgeStore | None = None,
        referral_code_generator: Callable[[int], str] = generate_referral_code,
        discount_code_factory: Callable[[str], str] | None = None,
    ) -> None:
        self._db = db_session
        self._policy = policy
        self._telemetry = telemetry or LoyaltyObservabilityStore()
        self._ledger = LedgerStore(db_session)
        self._projector = BalanceProjector(db_session, policy.tiers)
        self._referrals = ReferralService(
            db_session,
            code_length=policy.referral_code_length,
            max_attempts=policy.referral_code_max_attempts,
            code_generator=referral_code_generator,
        )
        self._redemptions = RedemptionEngine(
            db_session,
            policy,
            ledger=self._ledger,
            projector=self._projector,
            code_factory=discount_code_factory,
        )
        self._badges = BadgeEvaluator(badge_store or SqlBadgeStore(db_session), on_grant=self._credit_badge)

    # ------------------------------------------------------------------
    # Earning
    # ------------------------------------------------------------------

    async def award_xp_for_purchase(self, user_id: UUID | None, order_id: str, total_cents: int) -> LoyaltyResult:
        """Credit purchase XP once per order id."""

        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            if total_cents > MAX_ORDER_TOTAL_CENTS:
                raise InvalidPurchaseAmount(f"Order total {total_cents} exceeds {MAX_ORDER_TOTAL_CENTS} cents")
            points = self._policy.points_for_purchase(total_cents)
            if points <= 0:
                return LoyaltyResult.success(points=0, duplicate=False, badges_granted=[])

            outcome = await self._credit(
                user,
                LedgerEventType.PURCHASE,
                points,
                idempotency_key=f"purchase:{order_id}",
                metadata={"order_id": order_id, "total_cents": total_cents},
            )
            await self._db.commit()
            return await self._award_result(user, LedgerEventType.PURCHASE, points, outcome)

        return await self._guard("award_purchase", run)

    async def award_xp_for_referral(self, referrer_id: UUID | None, referral_id: UUID) -> LoyaltyResult:
        """Credit the referral reward once per referral."""

        async def run() -> LoyaltyResult:
            user = self._require_user(referrer_id)
            referral = await self._referrals.get_referral(referral_id)
            if referral is None or referral.referrer_id != user:
                raise ReferralNotFound("Referral not found for this member")
            points = self._policy.referral_reward_points
            outcome = await self._credit_referrer(user, referral_id, {})
            await self._db.commit()
            return await self._award_result(user, LedgerEventType.REFERRAL, points, outcome)

        return await self._guard("award_referral", run)

    async def award_birthday_bonus(self, user_id: UUID | None, year: int) -> LoyaltyResult:
        """Credit the birthday bonus at most once per calendar year."""

        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            points = self._policy.birthday_bonus_points
            if points <= 0:
                return LoyaltyResult.success(points=0, duplicate=False, badges_granted=[])

            outcome = await self._credit(
                user,
                LedgerEventType.BIRTHDAY,
                points,
                idempotency_key=f"birthday:{user}:{year}",
                metadata={"year": year},
            )
            await self._db.commit()
            return await self._award_result(user, LedgerEventType.BIRTHDAY, points, outcome)

        return await self._guard("award_birthday", run)

    # ------------------------------------------------------------------
    # Referrals
    # ------------------------------------------------------------------

    async def get_or_create_referral_code(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            await self._projector.ensure_account(user)
            await self._db.commit()
            referral_code = await self._referrals.get_or_create_code(user)
            code = referral_code.code
            return LoyaltyResult.success(code=code, link=self._policy.referral_link(code))

        return await self._guard("referral_code", run)

    async def link_referral(self, referred_user_id: UUID | None, code: str) -> LoyaltyResult:
        """Attach a newly signed up member to the owner of ``code``."""

        async def run() -> LoyaltyResult:
            user = self._require_user(referred_user_id)
            await self._projector.ensure_account(user)
            await self._db.commit()
            link = await self._referrals.link(user, code)
            if link.created:
                self._telemetry.record_referral_event("linked")
            return LoyaltyResult.success(
                linked=link.created,
                referral_id=str(link.referral.id),
                referrer_id=str(link.referral.referrer_id),
            )

        return await self._guard("link_referral", run)

    async def complete_referral(self, referred_user_id: UUID | None, order_id: str) -> LoyaltyResult:
        """Record the referred member's first order and reward the referrer exactly once."""

        async def run() -> LoyaltyResult:
            user = self._require_user(referred_user_id)
            completion = await self._referrals.mark_first_order(user, order_id)
            if completion is None:
                await self._db.rollback()
                return LoyaltyResult.success(completed=False, points_awarded=0)

            outcome = await self._credit_referrer(
                completion.referrer_id,
                completion.referral_id,
                {"referred_id": str(user), "order_id": order_id},
            )
            await self._db.commit()
            self._telemetry.record_referral_event("completed")
            logger.info(
                "Completed referral",
                referral_id=str(completion.referral_id),
                referrer_id=str(completion.referrer_id),
                order_id=order_id,
            )
            await self._evaluate_quietly(completion.referrer_id)
            return LoyaltyResult.success(
                completed=True,
                referral_id=str(completion.referral_id),
                referrer_id=str(completion.referrer_id),
                points_awarded=self._policy.referral_reward_points if outcome.created else 0,
            )

        return await self._guard("complete_referral", run)

    async def get_referral_stats(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            stats = await self._referrals.stats(user)
            return LoyaltyResult.success(
                total_referred=stats.total_referred,
                completed_first_purchase=stats.completed_first_purchase,
            )

        return await self._guard("referral_stats", run)

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------

    async def redeem_points(self, user_id: UUID | None, points: int, request_id: str | None = None) -> LoyaltyResult:
        """Convert points into a discount code; replays of ``request_id`` return the same code."""

        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            receipt = await self._redemptions.redeem(user, points, request_id or uuid4().hex)
            self._telemetry.record_redemption("replayed" if receipt.replayed else "succeeded")
            return LoyaltyResult.success(
                code=receipt.code,
                points=receipt.points,
                value_cents=receipt.value_cents,
                valid_until=receipt.valid_until.isoformat(),
                total_points=receipt.total_points,
                tier=receipt.tier.value,
                replayed=receipt.replayed,
            )

        result = await self._guard("redeem", run)
        if not result.ok:
            self._telemetry.record_redemption(result.error_kind or "failed")
        return result

    async def list_redemption_options(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            profile = await self._db.get(UserProfile, user, populate_existing=True)
            balance = int(profile.total_points) if profile else 0
            options = [
                {"points": points, "value_cents": value_cents, "affordable": balance >= points}
                for points, value_cents in sorted(self._policy.redemption_table.items())
            ]
            return LoyaltyResult.success(total_points=balance, options=options)

        return await self._guard("redemption_options", run)

    # ------------------------------------------------------------------
    # Badges and profile
    # ------------------------------------------------------------------

    async def evaluate_badges(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            granted = await self._badges.evaluate(user)
            await self._db.commit()
            return LoyaltyResult.success(badges_granted=[badge.code for badge in granted])

        return await self._guard("evaluate_badges", run)

    async def list_badges(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            catalog = (
                await self._db.execute(select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.code.asc()))
            ).scalars().all()
            owned = dict(
                (
                    await self._db.execute(
                        select(UserBadge.badge_id, UserBadge.awarded_at).where(UserBadge.user_id == user)
                    )
                ).all()
            )
            badges = [
                {
                    "code": badge.code,
                    "name": badge.name,
                    "description": badge.description,
                    "icon": badge.icon,
                    "points_reward": int(badge.points_reward or 0),
                    "earned": badge.id in owned,
                    "awarded_at": owned[badge.id].isoformat() if owned.get(badge.id) else None,
                }
                for badge in catalog
            ]
            return LoyaltyResult.success(badges=badges)

        return await self._guard("list_badges", run)

    async def update_display_name(self, user_id: UUID | None, display_name: str | None) -> LoyaltyResult:
        """Persist the trimmed display name and re-run badge evaluation when it is set."""

        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            cleaned = (display_name or "").strip() or None
            await self._projector.ensure_account(user)
            await self._db.execute(
                update(UserProfile)
                .where(UserProfile.id == user)
                .values(display_name=cleaned)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            logger.info("Updated display name", user_id=str(user), has_name=cleaned is not None)

            granted: list[str] = []
            if cleaned:
                granted = await self._evaluate_quietly(user)
            return LoyaltyResult.success(display_name=cleaned, badges_granted=granted)

        return await self._guard("update_display_name", run)

    async def update_birthday(self, user_id: UUID | None, birthday: date | None) -> LoyaltyResult:
        """Store the member's birthday for the yearly bonus sweep; None clears it."""

        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            if birthday is not None and birthday > datetime.now(timezone.utc).date():
                raise InvalidBirthday()
            await self._projector.ensure_account(user)
            await self._db.execute(
                update(UserProfile)
                .where(UserProfile.id == user)
                .values(birthday=birthday)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            logger.info("Updated birthday", user_id=str(user), has_birthday=birthday is not None)
            return LoyaltyResult.success(birthday=birthday.isoformat() if birthday else None)

        return await self._guard("update_birthday", run)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_loyalty_snapshot(self, user_id: UUID | None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            profile = await self._db.get(UserProfile, user, populate_existing=True)
            total_points = int(profile.total_points) if profile else 0
            tier = MembershipTier(profile.tier) if profile else self._policy.tiers.tier_for_points(0)
            progress = self._policy.tiers.progress(total_points)
            referral_code = await self._referrals.get_code(user)
            return LoyaltyResult.success(
                user_id=str(user),
                display_name=profile.display_name if profile else None,
                total_points=total_points,
                tier=tier.value,
                next_tier=progress.next_tier.value if progress.next_tier else None,
                points_to_next_tier=progress.points_to_next_tier,
                progress_percent=progress.percent,
                referral_code=referral_code.code if referral_code else None,
            )

        return await self._guard("snapshot", run)

    async def list_ledger(self, user_id: UUID | None, *, limit: int = 25, cursor: str | None = None) -> LoyaltyResult:
        async def run() -> LoyaltyResult:
            user = self._require_user(user_id)
            decoded = None
            if cursor:
                try:
                    decoded = decode_ledger_cursor(cursor)
                except ValueError as exc:
                    raise InvalidCursor() from exc
            entries, next_cursor = await self._ledger.list_for_user(user, limit=limit, cursor=decoded)
            return LoyaltyResult.success(
                entries=[
                    {
                        "id": str(entry.id),
                        "event_type": entry.event_type.value,
                        "amount": int(entry.amount),
                        "metadata": dict(entry.metadata_json or {}),
                        "created_at": entry.created_at.isoformat(),
                    }
                    for entry in entries
                ],
                next_cursor=encode_ledger_cursor(*next_cursor) if next_cursor else None,
            )

        return await self._guard("list_ledger", run)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _require_user(user_id: UUID | None) -> UUID:
        if user_id is None:
            raise NotAuthenticated()
        return user_id

    async def _guard(self, operation: str, run: Callable[[], Awaitable[LoyaltyResult]]) -> LoyaltyResult:
        try:
            return await run()
        except LoyaltyError as exc:
            await self._rollback_quietly(operation)
            self._telemetry.record_failure(operation, exc.kind)
            logger.info("Loyalty operation rejected", operation=operation, kind=exc.kind, reason=exc.message)
            return LoyaltyResult.failure(exc)
        except (OperationalError, InterfaceError, TimeoutError) as exc:
            await self._rollback_quietly(operation)
            error = StoreUnavailable()
            self._telemetry.record_failure(operation, error.kind)
            logger.warning(
                "Loyalty store unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return LoyaltyResult.failure(error)
        except DBAPIError as exc:
            await self._rollback_quietly(operation)
            error = StoreRejected()
            self._telemetry.record_failure(operation, error.kind)
            logger.error(
                "Loyalty store rejected change",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc.orig),
            )
            return LoyaltyResult.failure(error)

    async def _rollback_quietly(self, operation: str) -> None:
        try:
            await self._db.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed after loyalty error", operation=operation)

    async def _credit(
        self,
        user_id: UUID,
        event_type: LedgerEventType,
        points: int,
        *,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> AwardOutcome:
        """Append the entry and apply its delta in the caller's transaction; replays apply nothing."""

        await self._projector.ensure_account(user_id)
        append = await self._ledger.append(
            user_id=user_id,
            event_type=event_type,
            amount=points,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        self._telemetry.record_award(event_type.value, duplicate=append.duplicate)
        if append.duplicate:
            return AwardOutcome(created=False, balance=None)
        balance = await self._projector.apply(user_id, points)
        return AwardOutcome(created=True, balance=balance)

    async def _credit_referrer(self, referrer_id: UUID, referral_id: UUID, metadata: dict[str, Any]) -> AwardOutcome:
        points = self._policy.referral_reward_points
        outcome = AwardOutcome(created=False, balance=None)
        if points > 0:
            outcome = await self._credit(
                referrer_id,
                LedgerEventType.REFERRAL,
                points,
                idempotency_key=f"referral:{referral_id}",
                metadata={"referral_id": str(referral_id), **metadata},
            )
        await self._referrals.mark_referrer_rewarded(referral_id)
        return outcome

    async def _credit_badge(self, user_id: UUID, badge: Badge) -> None:
        """Grant hook: commits the ownership row together with any badge points."""

        reward = int(badge.points_reward or 0)
        if reward > 0:
            await self._credit(
                user_id,
                LedgerEventType.BADGE,
                reward,
                idempotency_key=f"badge:{user_id}:{badge.code}",
                metadata={"badge": badge.code},
            )
        await self._db.commit()
        self._telemetry.record_badge_grant(badge.code)

    async def _evaluate_quietly(self, user_id: UUID) -> list[str]:
        """Badge evaluation that never fails the operation that triggered it."""

        try:
            granted = await self._badges.evaluate(user_id)
            await self._db.commit()
        except Exception:
            logger.exception("Badge evaluation failed", user_id=str(user_id))
            await self._rollback_quietly("evaluate_badges")
            return []
        return [badge.code for badge in granted]

    async def _award_result(
        self,
        user_id: UUID,
        event_type: LedgerEventType,
        points: int,
        outcome: AwardOutcome,
    ) -> LoyaltyResult:
        if not outcome.created:
            logger.info("Loyalty award replayed", user_id=str(user_id), event_type=event_type.value)
            return LoyaltyResult.success(points=0, duplicate=True, badges_granted=[])

        granted = await self._evaluate_quietly(user_id)
        balance = outcome.balance
        return LoyaltyResult.success(
            points=points,
            duplicate=False,
            total_points=balance.total_points if balance else None,
            tier=balance.tier.value if balance else None,
            badges_granted=granted,
        )
