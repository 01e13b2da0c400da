"""
Local snapshot manager for the classroom database.

The SnapshotManager creates timestamped copies of the live SQLite file in the
backup directory and enforces the retention window.

Snapshot format:
    <backup_dir>/<prefix>_<YYYY-MM-DD>_<HH-MM-SS-ffffff>Z.db

    Every timestamp field is fixed-width and free of ':' and '.', so sorting
    filenames as strings sorts snapshots by creation time.

Invariants:
    - Snapshots are point-in-time consistent (SQLite online backup API)
    - A snapshot only appears under its final name once fully written
    - Snapshots are never modified after creation; rotation only deletes
    - Snapshots use the rollback journal, so reading one leaves no -wal/-shm
      files behind; rotation also deletes any sidecars of removed snapshots
    - The newest retention_count snapshots always survive rotation
    - The backup directory is owned exclusively by this manager

How to change safely:
    - Keep the filename format sortable; restore picks the newest by name
    - Never rotate before a snapshot has been fully written
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import quote

from ..database import remove_sidecars
from ..errors import SourceMissingError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S-%f"
SNAPSHOT_SUFFIX = ".db"


@dataclass(frozen=True)
class Snapshot:
    """One point-in-time copy of the database.

    Attributes:
        path: Snapshot file location
        created_at: Creation time (UTC), parsed from the filename
        size_bytes: File size in bytes
    """

    path: Path
    created_at: datetime
    size_bytes: int

    @property
    def filename(self) -> str:
        return self.path.name

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
        }


class SnapshotManager:
    """Creates, lists and rotates local database snapshots.

    Attributes:
        db_path: Live database file
        backup_dir: Directory holding snapshots
        prefix: Snapshot filename prefix

    Example:
        >>> manager = SnapshotManager("classroom.db", "backups")
        >>> snapshot = manager.create_snapshot()
        >>> manager.rotate(7)
    """

    def __init__(
        self,
        db_path: str | Path,
        backup_dir: str | Path,
        prefix: str = "classroom_backup",
    ) -> None:
        """Initialize the snapshot manager.

        Args:
            db_path: Live SQLite database file
            backup_dir: Directory for snapshot files
            prefix: Filename prefix for snapshot files
        """
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)
        self.prefix = prefix
        self._name_pattern = re.compile(
            rf"^{re.escape(prefix)}_(\d{{4}}-\d{{2}}-\d{{2}}_\d{{2}}-\d{{2}}-\d{{2}}-\d{{6}})Z"
            rf"{re.escape(SNAPSHOT_SUFFIX)}$"
        )

    def ensure_backup_dir(self) -> None:
        """Create the backup directory (and parents) if absent."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def filename_for(self, created_at: datetime) -> str:
        """Build the snapshot filename for a creation time."""
        stamp = created_at.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
        return f"{self.prefix}_{stamp}Z{SNAPSHOT_SUFFIX}"

    def parse_filename(self, name: str) -> datetime | None:
        """Return the creation time encoded in a snapshot filename, or None."""
        match = self._name_pattern.match(name)
        if not match:
            return None
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

    def create_snapshot(self, now: datetime | None = None) -> Snapshot:
        """Copy the live database into a new timestamped snapshot.

        Args:
            now: Creation time override (defaults to the current UTC time)

        Returns:
            The created Snapshot

        Raises:
            SourceMissingError: If the live database file does not exist
            sqlite3.Error, OSError: If the copy fails
        """
        if not self.db_path.is_file():
            raise SourceMissingError(str(self.db_path))

        self.ensure_backup_dir()

        created_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        final_path = self.backup_dir / self.filename_for(created_at)
        while final_path.exists():
            created_at += timedelta(microseconds=1)
            final_path = self.backup_dir / self.filename_for(created_at)

        tmp_path = self.backup_dir / f".{final_path.name}.partial"
        try:
            self._backup_database(self.db_path, tmp_path)
            os.replace(tmp_path, final_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
            remove_sidecars(tmp_path)

        snapshot = Snapshot(
            path=final_path,
            created_at=created_at,
            size_bytes=final_path.stat().st_size,
        )
        logger.info(
            "Created snapshot",
            extra={"snapshot": snapshot.filename, "size_bytes": snapshot.size_bytes},
        )
        return snapshot

    def list_snapshots(self) -> list[Snapshot]:
        """List snapshots in the backup directory, newest first."""
        if not self.backup_dir.is_dir():
            return []

        snapshots = []
        for entry in self.backup_dir.iterdir():
            created_at = self.parse_filename(entry.name)
            if created_at is None or not entry.is_file():
                continue
            try:
                size = entry.stat().st_size
            except FileNotFoundError:
                continue
            snapshots.append(Snapshot(path=entry, created_at=created_at, size_bytes=size))

        return sorted(snapshots, key=lambda s: s.filename, reverse=True)

    def latest_snapshot(self) -> Snapshot | None:
        """Return the newest snapshot, if any."""
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None

    def get_snapshot(self, name: str) -> Snapshot | None:
        """Look up a snapshot by filename."""
        for snapshot in self.list_snapshots():
            if snapshot.filename == name:
                return snapshot
        return None

    def rotate(self, retention_count: int) -> list[Path]:
        """Delete every snapshot beyond the retention_count newest.

        Args:
            retention_count: Number of most recent snapshots to keep

        Returns:
            Paths that were deleted
        """
        if retention_count < 1:
            raise ValueError("retention_count must be at least 1")

        deleted = []
        for snapshot in self.list_snapshots()[retention_count:]:
            try:
                snapshot.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(
                    f"Failed to delete old snapshot: {e}",
                    extra={"snapshot": snapshot.filename},
                )
                continue
            remove_sidecars(snapshot.path)
            deleted.append(snapshot.path)
            logger.info("Deleted old snapshot", extra={"snapshot": snapshot.filename})

        return deleted

    async def create_snapshot_async(self, now: datetime | None = None) -> Snapshot:
        """Create a snapshot without blocking the event loop."""
        return await asyncio.get_event_loop().run_in_executor(None, self.create_snapshot, now)

    async def rotate_async(self, retention_count: int) -> list[Path]:
        """Rotate snapshots without blocking the event loop."""
        return await asyncio.get_event_loop().run_in_executor(None, self.rotate, retention_count)

    def _backup_database(self, source_path: Path, dest_path: Path) -> None:
        """Create consistent database backup using SQLite backup API."""
        source_uri = f"file:{quote(str(source_path.resolve()))}?mode=ro"
        source_conn = sqlite3.connect(source_uri, uri=True)
        dest_conn = sqlite3.connect(str(dest_path))

        try:
            source_conn.backup(dest_conn)
            dest_conn.execute("PRAGMA journal_mode=DELETE")
        finally:
            source_conn.close()
            dest_conn.close()
