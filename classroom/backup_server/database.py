"""
Classroom SQLite database service.

This module owns the single-file SQLite database behind the points
application. The backup subsystem only needs three things from it:
- the file path
- schema initialization for a fresh database
- the integrity-check primitive (and a few counters for email summaries)

Table schema:
    students:
        - id INTEGER PRIMARY KEY
        - name TEXT
        - points INTEGER, wallet_points INTEGER
        - stage TEXT, character_type TEXT
        - created_at, updated_at DATETIME

    point_logs:
        - id INTEGER PRIMARY KEY
        - student_id INTEGER -> students.id
        - points_change INTEGER, reason TEXT, created_by TEXT
        - created_at DATETIME

    evolution_config:
        - id INTEGER PRIMARY KEY
        - stage TEXT, min_points INTEGER, max_points INTEGER, description TEXT

    system_config:
        - id INTEGER PRIMARY KEY
        - config_key TEXT UNIQUE, config_value TEXT, description TEXT

Invariants:
    - One SQLite file per deployment
    - initialize_schema is idempotent (CREATE TABLE IF NOT EXISTS)
    - Every connection is closed before the method returns

How to change safely:
    - Schema changes must be additive so old snapshots stay restorable
    - Keep system_stats tolerant of missing tables (old snapshots)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

EVOLUTION_STAGES = [
    (1, "level1", 0, 19, "Level 1 - Hatching"),
    (2, "level2", 20, 39, "Level 2 - Growing"),
    (3, "level3", 40, 59, "Level 3 - Steady progress"),
    (4, "level4", 60, 79, "Level 4 - Stable development"),
    (5, "level5", 80, 99, "Level 5 - Accelerating"),
    (6, "level6", 100, 119, "Level 6 - Breakthrough"),
    (7, "level7", 120, 139, "Level 7 - Excellent"),
    (8, "level8", 140, 159, "Level 8 - Outstanding"),
    (9, "level9", 160, 179, "Level 9 - Nearly perfect"),
    (10, "level10", 180, 999999, "Level 10 - Perfect"),
]

SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


def remove_sidecars(db_path: Path) -> None:
    """Delete SQLite journal sidecar files next to db_path."""
    for suffix in SIDECAR_SUFFIXES:
        sidecar = db_path.with_name(db_path.name + suffix)
        if sidecar.exists():
            sidecar.unlink()
            logger.info("Removed sidecar", extra={"path": str(sidecar)})


class ClassroomDatabase:
    """SQLite database holding the classroom points data.

    Thread safety:
        Each operation opens its own connection, so methods may be called
        from executor threads.

    Example:
        >>> db = ClassroomDatabase("/var/lib/classroom/classroom.db")
        >>> db.initialize_schema()
        >>> db.integrity_check()
        'ok'
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = 5000) -> None:
        """Initialize the database service.

        Args:
            path: SQLite database file path
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, creating the file and its directory if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create the application tables and seed the evolution stages."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS students (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    points INTEGER DEFAULT 0,
                    wallet_points INTEGER DEFAULT 0,
                    stage TEXT DEFAULT 'egg',
                    character_type TEXT DEFAULT 'default',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS point_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    student_id INTEGER,
                    points_change INTEGER,
                    reason TEXT,
                    created_by TEXT DEFAULT 'teacher',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (student_id) REFERENCES students (id)
                );

                CREATE TABLE IF NOT EXISTS evolution_config (
                    id INTEGER PRIMARY KEY,
                    stage TEXT NOT NULL,
                    min_points INTEGER NOT NULL,
                    max_points INTEGER,
                    description TEXT
                );

                CREATE TABLE IF NOT EXISTS system_config (
                    id INTEGER PRIMARY KEY,
                    config_key TEXT UNIQUE NOT NULL,
                    config_value TEXT NOT NULL,
                    description TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
            """)
            conn.executemany(
                """
                INSERT OR REPLACE INTO evolution_config
                    (id, stage, min_points, max_points, description)
                VALUES (?, ?, ?, ?, ?)
                """,
                EVOLUTION_STAGES,
            )
        logger.info("Initialized database schema", extra={"db_path": str(self.path)})

    def integrity_check(self) -> str:
        """Run PRAGMA integrity_check and return its first result row."""
        with self._get_connection() as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
            return row[0] if row else "no result"

    def system_stats(self) -> dict[str, Any]:
        """Collect counters used in the email summary.

        Returns:
            Dict with total_students, total_logs and running_days. Counters
            whose table is missing are left out.
        """
        stats: dict[str, Any] = {}
        if not self.path.exists():
            return stats

        with self._get_connection() as conn:
            try:
                stats["total_students"] = conn.execute("SELECT COUNT(*) FROM students").fetchone()[0]
                earliest = conn.execute("SELECT MIN(created_at) FROM students").fetchone()[0]
                if earliest:
                    started = datetime.fromisoformat(str(earliest)).replace(tzinfo=timezone.utc)
                    stats["running_days"] = max(1, (datetime.now(timezone.utc) - started).days + 1)
            except (sqlite3.Error, ValueError) as e:
                logger.debug(f"Student statistics unavailable: {e}")
            try:
                stats["total_logs"] = conn.execute("SELECT COUNT(*) FROM point_logs").fetchone()[0]
            except sqlite3.Error as e:
                logger.debug(f"Point log statistics unavailable: {e}")
        return stats
