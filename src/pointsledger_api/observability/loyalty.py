from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    conflicts: Dict[str, int]
    redemptions: Dict[str, int]
    sweeps: Dict[str, int]
    reconciliation_alerts: List[Dict[str, Any]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "conflicts": dict(self.conflicts),
            "redemptions": dict(self.redemptions),
            "sweeps": dict(self.sweeps),
            "reconciliation_alerts": [dict(alert) for alert in self.reconciliation_alerts],
        }


class LoyaltyObservabilityStore:
    """Collect ledger and redemption telemetry for dashboards and alerting."""

    _MAX_ALERTS = 100

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._conflicts: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)
        self._alerts: List[Dict[str, Any]] = []

    def record_ledger_append(self, kind: str, amount: int) -> None:
        with self._lock:
            self._ledger[f"appends:{kind}"] += 1
            self._ledger[f"points:{kind}"] += amount

    def record_conflict(self, operation: str, *, exhausted: bool = False) -> None:
        with self._lock:
            self._conflicts[operation] += 1
            if exhausted:
                self._conflicts["exhausted"] += 1

    def record_redemption_event(self, event: str) -> None:
        with self._lock:
            self._redemptions[event] += 1

    def record_sweep(self, *, accounts_scanned: int, accounts_expired: int, points_expired: int) -> None:
        with self._lock:
            self._sweeps["runs"] += 1
            self._sweeps["accounts_scanned"] += accounts_scanned
            self._sweeps["accounts_expired"] += accounts_expired
            self._sweeps["points_expired"] += points_expired

    def record_reconciliation_alert(self, reason: str, **context: Any) -> None:
        alert = {
            "reason": reason,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            **{key: str(value) for key, value in context.items()},
        }
        with self._lock:
            self._alerts.append(alert)
            if len(self._alerts) > self._MAX_ALERTS:
                del self._alerts[: len(self._alerts) - self._MAX_ALERTS]

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                conflicts=dict(self._conflicts),
                redemptions=dict(self._redemptions),
                sweeps=dict(self._sweeps),
                reconciliation_alerts=list(self._alerts),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._conflicts.clear()
            self._redemptions.clear()
            self._sweeps.clear()
            self._alerts.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
