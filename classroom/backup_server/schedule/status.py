"""
In-memory backup status registry.

Holds the operator-visible state of the backup subsystem: last and next
backup times, whether a run is in flight, the total successful backups and a
bounded list of recent errors.

Invariants:
    - total_backups never decreases
    - errors never exceeds its capacity; the oldest entry is evicted first
    - snapshot() returns a consistent copy; callers never see partial updates
    - State is process-local and resets on restart
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class StatusRegistry:
    """Thread-safe status of the backup subsystem.

    Attributes:
        error_capacity: Maximum number of retained error entries
    """

    def __init__(self, error_capacity: int = 50) -> None:
        if error_capacity < 1:
            raise ValueError("error_capacity must be at least 1")
        self.error_capacity = error_capacity
        self._lock = threading.Lock()
        self._last_backup_at: datetime | None = None
        self._next_backup_at: datetime | None = None
        self._is_running = False
        self._total_backups = 0
        self._errors: deque[dict[str, Any]] = deque(maxlen=error_capacity)
        self._last_run: dict[str, Any] | None = None

    def mark_running(self) -> None:
        with self._lock:
            self._is_running = True

    def mark_idle(self) -> None:
        with self._lock:
            self._is_running = False

    def set_next_backup_at(self, when: datetime | None) -> None:
        with self._lock:
            self._next_backup_at = when

    def record_backup(self, when: datetime) -> None:
        """Record a run that produced a snapshot."""
        with self._lock:
            self._last_backup_at = when
            self._total_backups += 1

    def record_error(self, outcome: str, message: str, when: datetime | None = None) -> None:
        with self._lock:
            self._errors.append(
                {
                    "timestamp": _iso(when or datetime.now(timezone.utc)),
                    "outcome": outcome,
                    "message": message,
                }
            )

    def record_run(self, run: dict[str, Any]) -> None:
        with self._lock:
            self._last_run = run

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._is_running

    @property
    def total_backups(self) -> int:
        with self._lock:
            return self._total_backups

    def snapshot(self) -> dict[str, Any]:
        """Consistent read-only view of the registry."""
        with self._lock:
            return {
                "last_backup_at": _iso(self._last_backup_at),
                "next_backup_at": _iso(self._next_backup_at),
                "is_running": self._is_running,
                "total_backups": self._total_backups,
                "errors": list(self._errors),
                "last_run": self._last_run,
            }
