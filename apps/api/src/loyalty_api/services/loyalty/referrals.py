"""Referral code issuance and referred-user attribution."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.upsert import insert_ignoring_conflicts
from loyalty_api.models.loyalty import Referral, ReferralCode

from .errors import CodeGenerationExhausted, ReferralNotFound

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(length: int) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


@dataclass(frozen=True, slots=True)
class ReferralLink:
    referral: Referral
    created: bool


@dataclass(frozen=True, slots=True)
class ReferralCompletion:
    referral_id: UUID
    referrer_id: UUID
    first_order_id: str


@dataclass(frozen=True, slots=True)
class ReferralStats:
    total_referred: int
    completed_first_purchase: int


class ReferralService:
    """Referral bookkeeping guarded purely by unique constraints and conditional updates."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        code_length: int = 10,
        max_attempts: int = 3,
        code_generator: Callable[[int], str] = generate_referral_code,
    ) -> None:
        self._db = db_session
        self._code_length = code_length
        self._max_attempts = max_attempts
        self._generate = code_generator

    async def get_code(self, user_id: UUID) -> ReferralCode | None:
        stmt = select(ReferralCode).where(ReferralCode.user_id == user_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_code(self, user_id: UUID) -> ReferralCode:
        """Return the member's code, minting one with bounded retries on collision."""

        existing = await self.get_code(user_id)
        if existing is not None:
            return existing

        for attempt in range(1, self._max_attempts + 1):
            candidate = self._generate(self._code_length)
            stmt = insert_ignoring_conflicts(
                self._db,
                ReferralCode,
                {"user_id": user_id, "code": candidate},
            ).returning(ReferralCode.code)
            inserted = (await self._db.execute(stmt)).scalar_one_or_none()
            if inserted is not None:
                await self._db.commit()
                logger.info("Issued referral code", user_id=str(user_id), attempt=attempt)
                return await self.get_code(user_id)

            # Either a concurrent request already issued this member a code,
            # or the candidate collided with another member's code.
            existing = await self.get_code(user_id)
            if existing is not None:
                return existing
            logger.warning("Referral code collision", user_id=str(user_id), attempt=attempt)

        raise CodeGenerationExhausted()

    async def resolve_code(self, code: str) -> UUID | None:
        stmt = select(ReferralCode.user_id).where(ReferralCode.code == code.strip())
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def link(self, referred_user_id: UUID, code: str) -> ReferralLink:
        """Attach a referred user to the referrer owning ``code``; first link wins."""

        referrer_id = await self.resolve_code(code)
        if referrer_id is None:
            raise ReferralNotFound()
        if referrer_id == referred_user_id:
            raise ReferralNotFound("Members cannot refer themselves")

        stmt = insert_ignoring_conflicts(
            self._db,
            Referral,
            {
                "referrer_id": referrer_id,
                "referred_id": referred_user_id,
                "referral_code": code.strip(),
            },
            conflict_columns=["referred_id"],
        ).returning(Referral.id)
        inserted_id = (await self._db.execute(stmt)).scalar_one_or_none()
        await self._db.commit()

        referral = await self.get_for_referred(referred_user_id)
        if referral is None:  # pragma: no cover - row vanished after insert
            raise RuntimeError("Referral missing after link")
        if inserted_id is not None:
            logger.info(
                "Linked referral",
                referrer_id=str(referrer_id),
                referred_id=str(referred_user_id),
            )
        return ReferralLink(referral=referral, created=inserted_id is not None)

    async def get_referral(self, referral_id: UUID) -> Referral | None:
        return await self._db.get(Referral, referral_id, populate_existing=True)

    async def get_for_referred(self, referred_user_id: UUID) -> Referral | None:
        stmt = (
            select(Referral)
            .where(Referral.referred_id == referred_user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_first_order(self, referred_user_id: UUID, order_id: str) -> ReferralCompletion | None:
        """Set ``first_order_id`` only while it is still null.

        Returns None when there is no referral or it was already completed.
        Does not commit; the caller credits the referrer in the same transaction.
        """

        stmt = (
            update(Referral)
            .where(Referral.referred_id == referred_user_id)
            .where(Referral.first_order_id.is_(None))
            .values(first_order_id=order_id, completed_at=datetime.now(timezone.utc))
            .returning(Referral.id, Referral.referrer_id)
            .execution_options(synchronize_session=False)
        )
        row = (await self._db.execute(stmt)).one_or_none()
        if row is None:
            return None
        return ReferralCompletion(referral_id=row[0], referrer_id=row[1], first_order_id=order_id)

    async def mark_referrer_rewarded(self, referral_id: UUID) -> None:
        stmt = (
            update(Referral)
            .where(Referral.id == referral_id)
            .where(Referral.referrer_rewarded_at.is_(None))
            .values(referrer_rewarded_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def stats(self, referrer_id: UUID) -> ReferralStats:
        stmt = select(
            func.count(Referral.id),
            func.count(Referral.first_order_id),
        ).where(Referral.referrer_id == referrer_id)
        total, completed = (await self._db.execute(stmt)).one()
        return ReferralStats(total_referred=int(total or 0), completed_first_purchase=int(completed or 0))
