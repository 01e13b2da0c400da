"""
Append-only backup run log file.

When BACKUP_LOG_FILE is set, every finished run appends one line:

    [2026-01-01T04:00:00.123456+00:00] [INFO] success classroom_backup_...db ok
    [2026-01-01T08:00:00.654321+00:00] [ERROR] snapshot-failed - Database file not found: ...

Invariants:
    - Lines are only appended, never rewritten
    - Write failures are logged and never raised into the pipeline
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 20


class RunLog:
    """Run log file, or a no-op when no path is configured."""

    def __init__(self, path: str | Path | None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def append(
        self,
        outcome: str,
        snapshot: str | None = None,
        error: str | None = None,
        when: datetime | None = None,
    ) -> None:
        if self.path is None:
            return

        timestamp = (when or datetime.now(timezone.utc)).isoformat()
        level = "INFO" if error is None else "ERROR"
        message = " ".join((error or "ok").split())
        line = f"[{timestamp}] [{level}] {outcome} {snapshot or '-'} {message}\n"

        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.error(f"Failed to write backup run log: {e}", extra={"log_file": str(self.path)})

    def tail(self, limit: int = DEFAULT_TAIL_LINES) -> list[str]:
        """Return the last ``limit`` lines, oldest first."""
        if self.path is None or limit < 1 or not self.path.is_file():
            return []
        with open(self.path, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=limit)]
