from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    awards: Dict[str, Dict[str, int]]
    referrals: Dict[str, int]
    expiry: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": {key: dict(value) for key, value in self.awards.items()},
            "referrals": dict(self.referrals),
            "expiry": dict(self.expiry),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty award and referral telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._referrals: Dict[str, int] = defaultdict(int)
        self._expiry: Dict[str, int] = defaultdict(int)

    def record_award(self, event_type: str, outcome: str) -> None:
        with self._lock:
            self._awards[event_type][outcome] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_expiry_sweep(self, accounts: int, expired_points: int) -> None:
        with self._lock:
            self._expiry["sweeps"] += 1
            self._expiry["accounts"] += accounts
            self._expiry["expired_points"] += expired_points

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            awards = {key: dict(value) for key, value in self._awards.items()}
            referrals = dict(self._referrals)
            expiry = dict(self._expiry)
        return LoyaltySnapshot(awards=awards, referrals=referrals, expiry=expiry)

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._referrals.clear()
            self._expiry.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
