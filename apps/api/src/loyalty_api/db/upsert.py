"""Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING`` statements."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_ignoring_conflicts(
    session: AsyncSession,
    model: Any,
    values: Mapping[Any, Any],
    *,
    conflict_columns: Sequence[str] | None = None,
):
    """Insert that skips rows violating a unique constraint.

    Add ``.returning(...)``: an empty result means the row already existed and
    nothing was written. Without ``conflict_columns`` any unique constraint
    counts as a conflict.
    """

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(dict(values))
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(dict(values))
    else:  # pragma: no cover - only PostgreSQL and SQLite are deployed
        raise NotImplementedError(f"Conflict-ignoring inserts are not supported on {dialect}")

    if conflict_columns:
        return stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    return stmt.on_conflict_do_nothing()
