"""Append-only, idempotent loyalty ledger."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.upsert import insert_ignoring_conflicts
from loyalty_api.models.loyalty import LedgerEventType, LoyaltyLedgerEntry


@dataclass(slots=True)
class LedgerAppend:
    """Outcome of an append; ``created`` is False for a replayed idempotency key."""

    entry: LoyaltyLedgerEntry
    created: bool

    @property
    def duplicate(self) -> bool:
        return not self.created


class LedgerStore:
    """Writes ledger entries exactly once per idempotency key.

    Entries are never updated or deleted; corrections are new signed entries.
    The store only flushes, callers own the transaction boundary.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def append(
        self,
        *,
        user_id: UUID,
        event_type: LedgerEventType,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerAppend:
        if amount == 0:
            raise ValueError("Ledger entries require a non-zero amount")

        stmt = insert_ignoring_conflicts(
            self._db,
            LoyaltyLedgerEntry,
            {
                "user_id": user_id,
                "event_type": event_type,
                "amount": amount,
                "idempotency_key": idempotency_key,
                LoyaltyLedgerEntry.metadata_json: metadata or {},
            },
            conflict_columns=["idempotency_key"],
        ).returning(LoyaltyLedgerEntry.id)
        inserted_id = (await self._db.execute(stmt)).scalar_one_or_none()

        entry = await self.get_by_key(idempotency_key)
        if entry is None:  # pragma: no cover - row vanished between insert and read
            raise RuntimeError(f"Ledger entry {idempotency_key} missing after append")

        if inserted_id is None:
            logger.info(
                "Ledger append replayed existing entry",
                idempotency_key=idempotency_key,
                user_id=str(user_id),
            )
            return LedgerAppend(entry=entry, created=False)

        logger.info(
            "Appended loyalty ledger entry",
            user_id=str(user_id),
            event_type=event_type.value,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        return LedgerAppend(entry=entry, created=True)

    async def get_by_key(self, idempotency_key: str) -> LoyaltyLedgerEntry | None:
        stmt = select(LoyaltyLedgerEntry).where(LoyaltyLedgerEntry.idempotency_key == idempotency_key)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of entries and the cursor for the next page."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.user_id == user_id)
            .order_by(LoyaltyLedgerEntry.created_at.desc(), LoyaltyLedgerEntry.id.desc())
        )
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LoyaltyLedgerEntry.created_at < cursor_time,
                    and_(
                        LoyaltyLedgerEntry.created_at == cursor_time,
                        LoyaltyLedgerEntry.id < cursor_id,
                    ),
                )
            )

        result = await self._db.execute(stmt.limit(bounded_limit + 1))
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor

    async def sum_for_user(self, user_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LoyaltyLedgerEntry.amount), 0)).where(
            LoyaltyLedgerEntry.user_id == user_id
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def count_events(self, user_id: UUID, event_type: LedgerEventType) -> int:
        stmt = select(func.count(LoyaltyLedgerEntry.id)).where(
            LoyaltyLedgerEntry.user_id == user_id,
            LoyaltyLedgerEntry.event_type == event_type,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)


def encode_ledger_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_ledger_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
