"""Discriminated results returned across the loyalty boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import LoyaltyError


@dataclass(slots=True)
class LoyaltyResult:
    """``ok`` plus payload on success, or an error kind and message on failure."""

    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: str | None = None
    error_message: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls, **data: Any) -> "LoyaltyResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: LoyaltyError) -> "LoyaltyResult":
        return cls(
            ok=False,
            error_kind=error.kind,
            error_message=error.message,
            retryable=error.retryable,
        )

    def as_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, **self.data}
        return {
            "ok": False,
            "error": {
                "kind": self.error_kind,
                "message": self.error_message,
                "retryable": self.retryable,
            },
        }
