"""
Unit tests for the local snapshot manager.

Tests cover:
- Snapshot creation and naming
- Listing order and filtering
- Retention rotation
- Journal sidecars of WAL-mode sources
- Async wrappers
"""

import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from classroom.backup_server.errors import SourceMissingError
from classroom.backup_server.integrity import IntegrityChecker
from classroom.backup_server.snapshot import SnapshotManager

BASE_TIME = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


class TestSnapshotManager:
    """Tests for SnapshotManager."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def db_path(self, data_dir, make_database):
        return make_database(data_dir / "classroom.db")

    @pytest.fixture
    def manager(self, data_dir, db_path):
        return SnapshotManager(db_path, data_dir / "backups")

    def test_create_snapshot(self, manager):
        """Snapshot is a valid database with a timestamped name."""
        snapshot = manager.create_snapshot(now=BASE_TIME)

        assert snapshot.filename == "classroom_backup_2026-03-01_08-00-00-000000Z.db"
        assert snapshot.created_at == BASE_TIME
        assert snapshot.size_bytes == snapshot.path.stat().st_size
        assert IntegrityChecker().is_valid(snapshot.path)

    def test_filename_has_no_colons_or_periods(self, manager):
        """Snapshot names are filesystem safe."""
        snapshot = manager.create_snapshot()
        stem = snapshot.filename[: -len(".db")]

        assert ":" not in stem
        assert "." not in stem

    def test_create_snapshot_creates_backup_dir(self, manager):
        """Backup directory is created on demand."""
        assert not manager.backup_dir.exists()

        manager.create_snapshot()

        assert manager.backup_dir.is_dir()

    def test_create_snapshot_missing_source(self, data_dir):
        """Missing source database raises SourceMissingError."""
        manager = SnapshotManager(data_dir / "nope.db", data_dir / "backups")

        with pytest.raises(SourceMissingError):
            manager.create_snapshot()

    def test_same_timestamp_does_not_overwrite(self, manager):
        """Two snapshots in the same microsecond get distinct names."""
        first = manager.create_snapshot(now=BASE_TIME)
        second = manager.create_snapshot(now=BASE_TIME)

        assert first.path != second.path
        assert second.filename > first.filename
        assert len(manager.list_snapshots()) == 2

    def test_no_partial_files_left(self, manager):
        """Temporary files never remain in the backup directory."""
        manager.create_snapshot()

        names = [p.name for p in manager.backup_dir.iterdir()]
        assert len(names) == 1
        assert not any(name.endswith(".partial") for name in names)

    def test_list_snapshots_newest_first(self, manager):
        """Listing is ordered newest first."""
        for minutes in (0, 30, 10):
            manager.create_snapshot(now=BASE_TIME + timedelta(minutes=minutes))

        snapshots = manager.list_snapshots()

        assert [s.created_at for s in snapshots] == [
            BASE_TIME + timedelta(minutes=30),
            BASE_TIME + timedelta(minutes=10),
            BASE_TIME,
        ]
        assert manager.latest_snapshot() == snapshots[0]

    def test_list_ignores_foreign_files(self, manager):
        """Files not matching the naming pattern are ignored."""
        manager.create_snapshot(now=BASE_TIME)
        (manager.backup_dir / "notes.txt").write_text("hello")
        (manager.backup_dir / "classroom_backup_latest.db").write_text("x")

        assert len(manager.list_snapshots()) == 1

    def test_list_missing_dir(self, manager):
        """Listing a missing backup directory returns nothing."""
        assert manager.list_snapshots() == []
        assert manager.latest_snapshot() is None

    def test_parse_filename_round_trip(self, manager):
        """Filenames encode their creation time."""
        name = manager.filename_for(BASE_TIME)

        assert manager.parse_filename(name) == BASE_TIME
        assert manager.parse_filename("other.db") is None

    @pytest.mark.parametrize("total,keep", [(5, 3), (2, 7), (7, 7), (1, 1)])
    def test_rotate_keeps_newest(self, manager, total, keep):
        """Rotation leaves min(keep, total) newest snapshots."""
        created = [
            manager.create_snapshot(now=BASE_TIME + timedelta(hours=i)) for i in range(total)
        ]

        deleted = manager.rotate(keep)

        remaining = manager.list_snapshots()
        assert len(remaining) == min(keep, total)
        assert len(deleted) == max(0, total - keep)
        newest = sorted(created, key=lambda s: s.filename, reverse=True)[: min(keep, total)]
        assert [s.path for s in remaining] == [s.path for s in newest]

    def test_rotate_is_idempotent(self, manager):
        """Rotating twice performs no further deletions."""
        for i in range(4):
            manager.create_snapshot(now=BASE_TIME + timedelta(hours=i))

        assert len(manager.rotate(2)) == 2
        assert manager.rotate(2) == []

    def test_rotate_rejects_zero(self, manager):
        """Retention below one is rejected."""
        with pytest.raises(ValueError):
            manager.rotate(0)

    def test_get_snapshot(self, manager):
        """Snapshots can be looked up by filename."""
        snapshot = manager.create_snapshot(now=BASE_TIME)

        assert manager.get_snapshot(snapshot.filename) == snapshot
        assert manager.get_snapshot("classroom_backup_missing.db") is None

    @pytest.mark.asyncio
    async def test_async_wrappers(self, manager):
        """Async wrappers create and rotate snapshots."""
        await manager.create_snapshot_async(now=BASE_TIME)
        await manager.create_snapshot_async(now=BASE_TIME + timedelta(hours=1))

        deleted = await manager.rotate_async(1)

        assert len(deleted) == 1
        assert manager.latest_snapshot().created_at == BASE_TIME + timedelta(hours=1)

    def test_snapshot_of_wal_database_uses_rollback_journal(self, manager, db_path):
        """Checking a snapshot of a WAL database leaves no sidecar files."""
        writer = sqlite3.connect(str(db_path))
        try:
            writer.execute("PRAGMA journal_mode=WAL")
            writer.execute("INSERT INTO students (name, points) VALUES ('late', 1)")
            writer.commit()

            snapshot = manager.create_snapshot(now=BASE_TIME)
            assert IntegrityChecker().is_valid(snapshot.path)
        finally:
            writer.close()

        assert sorted(p.name for p in manager.backup_dir.iterdir()) == [snapshot.filename]
        conn = sqlite3.connect(str(snapshot.path))
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "delete"
            assert conn.execute("SELECT COUNT(*) FROM students").fetchone()[0] == 4
        finally:
            conn.close()

    def test_rotate_removes_sidecars(self, manager):
        """Sidecars of rotated snapshots are deleted with them."""
        old = manager.create_snapshot(now=BASE_TIME)
        new = manager.create_snapshot(now=BASE_TIME + timedelta(hours=1))
        for suffix in ("-wal", "-shm", "-journal"):
            old.path.with_name(old.filename + suffix).write_bytes(b"stale")

        manager.rotate(1)

        assert sorted(p.name for p in manager.backup_dir.iterdir()) == [new.filename]
