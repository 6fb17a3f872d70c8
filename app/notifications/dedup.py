"""
app/notifications/dedup.py

Process-local, time-windowed alert suppression.

State lives in memory only: a restart clears it and the first alert after
a restart is delivered again. ``sweep`` is driven by the scheduler.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


def build_alert_key(alert_type: str, identifier: str | None = None) -> str:
    """Stable key for one alert condition, e.g. ``zero_events:<source id>``."""
    if identifier:
        return f"{alert_type}:{identifier}"
    return alert_type


@dataclass
class _AlertRecord:
    last_sent: float
    suppressed: int = 0


@dataclass(frozen=True)
class DedupDecision:
    send: bool
    # For a delivery: duplicates swallowed in the window that just closed.
    suppressed: int = 0


class AlertDeduplicator:
    """
    Allows one delivery per key per cooldown window and counts the rest.
    """

    def __init__(
        self,
        *,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._records: dict[str, _AlertRecord] = {}
        self._lock = threading.Lock()

    def admit(self, key: str) -> DedupDecision:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None or now - record.last_sent >= self._cooldown_seconds:
                carried = record.suppressed if record is not None else 0
                self._records[key] = _AlertRecord(last_sent=now)
                return DedupDecision(send=True, suppressed=carried)
            record.suppressed += 1
            return DedupDecision(send=False, suppressed=record.suppressed)

    def suppressed_count(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            return record.suppressed if record else 0

    def sweep(self) -> int:
        """Drop entries idle for more than two cooldowns. Returns the number removed."""
        cutoff = self._clock() - 2 * self._cooldown_seconds
        with self._lock:
            expired = [key for key, record in self._records.items() if record.last_sent < cutoff]
            for key in expired:
                del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
