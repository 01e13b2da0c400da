"""
SQLite database integrity checker.

Decides whether a database file is usable: it exists, is non-empty, starts
with the SQLite file-format header, and passes PRAGMA integrity_check.

Invariants:
    - The check never raises; every failure mode returns False
    - The check is read-only: the file is opened with mode=ro so a missing
      file is never created
    - Every connection is closed before returning

How to change safely:
    - Keep the header check first so non-SQLite files never reach sqlite3
    - New failure reasons must also map to is_valid() == False
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"


@dataclass(frozen=True)
class IntegrityReport:
    """Outcome of an integrity check.

    Attributes:
        path: File that was checked
        valid: Whether the file is a usable database
        reason: missing, empty, bad-header, check-failed, error or ok
        detail: Integrity check output or error message
    """

    path: str
    valid: bool
    reason: str
    detail: str | None = None


class IntegrityChecker:
    """Structural and consistency validation of SQLite files.

    Example:
        >>> checker = IntegrityChecker()
        >>> checker.is_valid("/var/lib/classroom/classroom.db")
        True
    """

    def __init__(self, busy_timeout_ms: int = 5000) -> None:
        self.busy_timeout_ms = busy_timeout_ms

    def is_valid(self, path: str | Path) -> bool:
        """Return True only if the file is a usable SQLite database."""
        return self.check(path).valid

    def check(self, path: str | Path) -> IntegrityReport:
        """Check a database file and report why it is or is not valid."""
        path = Path(path)
        try:
            if not path.is_file():
                return self._fail(path, "missing")

            if path.stat().st_size == 0:
                return self._fail(path, "empty")

            with open(path, "rb") as f:
                header = f.read(len(SQLITE_HEADER))
            if header != SQLITE_HEADER:
                return self._fail(path, "bad-header")

            result = self._run_integrity_check(path)
            if result != "ok":
                return self._fail(path, "check-failed", result)

            return IntegrityReport(path=str(path), valid=True, reason="ok", detail="ok")

        except Exception as e:
            return self._fail(path, "error", str(e))

    def _run_integrity_check(self, path: Path) -> str:
        """Run PRAGMA integrity_check on a read-only connection."""
        uri = f"file:{quote(str(path.resolve()))}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=self.busy_timeout_ms / 1000.0)
        try:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        finally:
            conn.close()

        if not rows:
            return "no result"
        if len(rows) == 1:
            return rows[0][0]
        return "; ".join(str(row[0]) for row in rows[:5])

    def _fail(self, path: Path, reason: str, detail: str | None = None) -> IntegrityReport:
        logger.warning(
            f"Database integrity check failed: {reason}",
            extra={"path": str(path), "reason": reason, "detail": detail},
        )
        return IntegrityReport(path=str(path), valid=False, reason=reason, detail=detail)
