from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltyTelemetrySnapshot:
    awards: Dict[str, int]
    redemptions: Dict[str, int]
    badges: Dict[str, int]
    referrals: Dict[str, int]
    failures: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": dict(self.awards),
            "redemptions": dict(self.redemptions),
            "badges": dict(self.badges),
            "referrals": dict(self.referrals),
            "failures": dict(self.failures),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty pipeline telemetry for dashboards and alerting.

    One instance lives on ``app.state``; counters are per process.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._badges: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)

    def record_award(self, event_type: str, *, duplicate: bool) -> None:
        with self._lock:
            if duplicate:
                self._awards["duplicates"] += 1
                return
            self._awards["total"] += 1
            self._awards[f"type:{event_type}"] += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def record_badge_grant(self, badge_code: str) -> None:
        with self._lock:
            self._badges["total_grants"] += 1
            self._badges[f"badge:{badge_code}"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_failure(self, operation: str, kind: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{kind}"] += 1

    def snapshot(self) -> LoyaltyTelemetrySnapshot:
        with self._lock:
            return LoyaltyTelemetrySnapshot(
                awards=dict(self._awards),
                redemptions=dict(self._redemptions),
                badges=dict(self._badges),
                referrals=dict(self._referrals),
                failures=dict(self._failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._redemptions.clear()
            self._badges.clear()
            self._referrals.clear()
            self._failures.clear()


__all__ = ["LoyaltyObservabilityStore", "LoyaltyTelemetrySnapshot"]
