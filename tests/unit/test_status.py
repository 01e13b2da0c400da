"""
Unit tests for the status registry and the run log file.

Tests cover:
- Counters and timestamps
- Bounded error list
- Run log append and tail
"""

import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from classroom.backup_server.history import RunLog
from classroom.backup_server.schedule import StatusRegistry


class TestStatusRegistry:
    """Tests for StatusRegistry."""

    def test_initial_state(self):
        """A new registry is idle and empty."""
        status = StatusRegistry().snapshot()

        assert status == {
            "last_backup_at": None,
            "next_backup_at": None,
            "is_running": False,
            "total_backups": 0,
            "errors": [],
            "last_run": None,
        }

    def test_record_backup(self):
        """Recording a backup sets the timestamp and increments the total."""
        registry = StatusRegistry()
        when = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

        registry.record_backup(when)
        registry.record_backup(when)

        status = registry.snapshot()
        assert status["total_backups"] == 2
        assert status["last_backup_at"] == when.isoformat()

    def test_running_flag(self):
        """mark_running / mark_idle toggle is_running."""
        registry = StatusRegistry()

        registry.mark_running()
        assert registry.is_running is True
        registry.mark_idle()
        assert registry.is_running is False

    def test_errors_are_bounded(self):
        """Oldest errors are evicted past the capacity."""
        registry = StatusRegistry(error_capacity=3)

        for i in range(5):
            registry.record_error("snapshot-failed", f"failure {i}")

        errors = registry.snapshot()["errors"]
        assert [e["message"] for e in errors] == ["failure 2", "failure 3", "failure 4"]
        assert all(e["outcome"] == "snapshot-failed" for e in errors)

    def test_default_capacity(self):
        """Default capacity is 50 entries."""
        registry = StatusRegistry()

        for i in range(60):
            registry.record_error("integrity-failed", str(i))

        errors = registry.snapshot()["errors"]
        assert len(errors) == 50
        assert errors[0]["message"] == "10"

    def test_invalid_capacity(self):
        """Capacity below one is rejected."""
        with pytest.raises(ValueError):
            StatusRegistry(error_capacity=0)

    def test_snapshot_is_a_copy(self):
        """Mutating a snapshot does not change the registry."""
        registry = StatusRegistry()
        registry.record_error("snapshot-failed", "boom")

        status = registry.snapshot()
        status["errors"].clear()

        assert len(registry.snapshot()["errors"]) == 1

    def test_concurrent_updates(self):
        """Concurrent increments are not lost."""
        registry = StatusRegistry()
        when = datetime.now(timezone.utc)

        def worker():
            for _ in range(500):
                registry.record_backup(when)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.total_backups == 2000


class TestRunLog:
    """Tests for RunLog."""

    @pytest.fixture
    def log_dir(self):
        """Create temporary log directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_disabled_without_path(self):
        """A run log without a path is a no-op."""
        log = RunLog(None)

        log.append("success", "snap.db")

        assert log.enabled is False
        assert log.tail() == []

    def test_append_and_tail(self, log_dir):
        """Lines are appended with level, outcome, snapshot and message."""
        log = RunLog(log_dir / "logs" / "backup.log")
        when = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

        log.append("success", "classroom_backup_a.db", when=when)
        log.append("snapshot-failed", None, error="Database file not found:\n/data/x.db", when=when)

        lines = log.tail()
        assert lines == [
            f"[{when.isoformat()}] [INFO] success classroom_backup_a.db ok",
            f"[{when.isoformat()}] [ERROR] snapshot-failed - Database file not found: /data/x.db",
        ]

    def test_tail_limit(self, log_dir):
        """tail() returns only the newest lines, oldest first."""
        log = RunLog(log_dir / "backup.log")
        for i in range(30):
            log.append("success", f"snap_{i}.db")

        lines = log.tail(20)

        assert len(lines) == 20
        assert "snap_10.db" in lines[0]
        assert "snap_29.db" in lines[-1]

    def test_write_failure_is_swallowed(self, log_dir):
        """Write errors never raise."""
        blocker = log_dir / "not_a_dir"
        blocker.write_text("file")
        log = RunLog(blocker / "backup.log")

        log.append("success", "snap.db")

        assert log.tail() == []
