"""
Lightweight runtime metrics for health/observability.

Uses in-process counters so it works without extra dependencies.
"""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from typing import Deque, Dict


class _RuntimeMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._redemptions: Counter = Counter()
        self._notifications_deduplicated = 0
        self._escalations_sent = 0
        self._reconnect_attempts = 0
        self._error_timestamps: Deque[float] = deque()

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def increment_deduplicated(self, amount: int = 1) -> None:
        with self._lock:
            self._notifications_deduplicated += max(0, int(amount))

    def increment_escalations(self, amount: int = 1) -> None:
        with self._lock:
            self._escalations_sent += max(0, int(amount))

    def increment_reconnect_attempts(self, amount: int = 1) -> None:
        with self._lock:
            self._reconnect_attempts += max(0, int(amount))

    def record_error(self, ts: float | None = None) -> None:
        now = ts if ts is not None else time.time()
        with self._lock:
            self._error_timestamps.append(now)
            self._prune_locked(now)

    def snapshot(self) -> Dict[str, int]:
        now = time.time()
        with self._lock:
            self._prune_locked(now)
            return {
                "redemptions_recorded": self._redemptions["recorded"],
                "redemptions_conflicted": self._redemptions["already_redeemed"],
                "redemptions_failed": sum(
                    n for k, n in self._redemptions.items()
                    if k not in ("recorded", "already_redeemed")
                ),
                "notifications_deduplicated": self._notifications_deduplicated,
                "escalations_sent": self._escalations_sent,
                "reconnect_attempts": self._reconnect_attempts,
                "errors_last_hour": len(self._error_timestamps),
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._redemptions.clear()
            self._notifications_deduplicated = 0
            self._escalations_sent = 0
            self._reconnect_attempts = 0
            self._error_timestamps.clear()

    def _prune_locked(self, now: float) -> None:
        cutoff = now - 3600.0
        while self._error_timestamps and self._error_timestamps[0] < cutoff:
            self._error_timestamps.popleft()


_METRICS = _RuntimeMetrics()


def record_redemption(outcome: str) -> None:
    _METRICS.record_redemption(outcome)


def increment_deduplicated(amount: int = 1) -> None:
    _METRICS.increment_deduplicated(amount)


def increment_escalations(amount: int = 1) -> None:
    _METRICS.increment_escalations(amount)


def increment_reconnect_attempts(amount: int = 1) -> None:
    _METRICS.increment_reconnect_attempts(amount)


def record_error(ts: float | None = None) -> None:
    _METRICS.record_error(ts)


def metrics_snapshot() -> Dict[str, int]:
    return _METRICS.snapshot()


def reset_metrics_for_tests() -> None:
    _METRICS.reset_for_tests()
