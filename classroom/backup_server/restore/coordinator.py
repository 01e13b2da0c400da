"""
Startup restore coordinator.

Runs once per process start, before the database is served, and guarantees a
valid database file exists at the configured path.

State machine:
    CHECK_CURRENT   valid live file          -> already-valid
    RESTORE_LOCAL   newest local snapshot    -> restored-from-local
    RESTORE_REMOTE  one remote fetch         -> restored-from-remote
    FRESH_INIT      empty schema             -> fresh-initialized
    (FRESH_INIT failing raises RestoreExhaustedError)

Invariants:
    - Each state is attempted at most once; no retry loops
    - Only the newest local snapshot is tried
    - The live file is only ever replaced by an atomic rename
    - already-valid performs no mutating operation
    - Stale -wal/-shm/-journal sidecars never survive a replacement

How to change safely:
    - New states go before FRESH_INIT; FRESH_INIT must stay last
    - Any exception inside a state must advance to the next state
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..database import SIDECAR_SUFFIXES, ClassroomDatabase, remove_sidecars
from ..errors import RestoreExhaustedError
from ..integrity import IntegrityChecker
from ..snapshot import SnapshotManager
from .remote import RemoteSource

logger = logging.getLogger(__name__)


class RestoreState(str, Enum):
    CHECK_CURRENT = "check-current"
    RESTORE_LOCAL = "restore-local"
    RESTORE_REMOTE = "restore-remote"
    FRESH_INIT = "fresh-init"


class RestoreOutcome(str, Enum):
    ALREADY_VALID = "already-valid"
    RESTORED_FROM_LOCAL = "restored-from-local"
    RESTORED_FROM_REMOTE = "restored-from-remote"
    FRESH_INITIALIZED = "fresh-initialized"


@dataclass
class RestoreDecision:
    """Result of a startup recovery run.

    Attributes:
        outcome: Terminal outcome
        source: Snapshot path or remote location used (None otherwise)
        attempts: States entered, in order
        duration_ms: Time spent in the coordinator
    """

    outcome: RestoreOutcome
    source: str | None = None
    attempts: list[RestoreState] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def needs_protective_snapshot(self) -> bool:
        return self.outcome != RestoreOutcome.ALREADY_VALID

    def to_dict(self) -> dict[str, object]:
        return {
            "outcome": self.outcome.value,
            "source": self.source,
            "attempts": [state.value for state in self.attempts],
            "duration_ms": self.duration_ms,
        }


def install_database_file(source: Path, db_path: Path) -> None:
    """Atomically replace db_path with a copy of source.

    The copy lands in a temporary file next to db_path and is renamed over
    it, so a crash never leaves a half-written live file.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = db_path.with_name(f".{db_path.name}.restore.partial")
    try:
        shutil.copyfile(source, tmp_path)
        remove_sidecars(db_path)
        os.replace(tmp_path, db_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class RestoreCoordinator:
    """Walks the startup fallback chain.

    Example:
        >>> coordinator = RestoreCoordinator(database, snapshots, checker, remote)
        >>> decision = await coordinator.run()
        >>> decision.outcome
        <RestoreOutcome.ALREADY_VALID: 'already-valid'>
    """

    def __init__(
        self,
        database: ClassroomDatabase,
        snapshots: SnapshotManager,
        checker: IntegrityChecker,
        remote: RemoteSource | None = None,
    ) -> None:
        self.database = database
        self.snapshots = snapshots
        self.checker = checker
        self.remote = remote

    @property
    def db_path(self) -> Path:
        return self.database.path

    async def run(self) -> RestoreDecision:
        """Run the fallback chain until a valid database exists.

        Raises:
            RestoreExhaustedError: If even fresh initialization fails
        """
        start_time = time.time()
        attempts: list[RestoreState] = []

        def decide(outcome: RestoreOutcome, source: str | None = None) -> RestoreDecision:
            decision = RestoreDecision(
                outcome=outcome,
                source=source,
                attempts=attempts,
                duration_ms=int((time.time() - start_time) * 1000),
            )
            logger.info(
                f"Startup restore finished: {outcome.value}",
                extra=decision.to_dict(),
            )
            return decision

        attempts.append(RestoreState.CHECK_CURRENT)
        if self.checker.is_valid(self.db_path):
            return decide(RestoreOutcome.ALREADY_VALID)

        logger.warning("Database missing or invalid, starting recovery", extra={"db_path": str(self.db_path)})

        attempts.append(RestoreState.RESTORE_LOCAL)
        source = self._restore_local()
        if source:
            return decide(RestoreOutcome.RESTORED_FROM_LOCAL, source)

        attempts.append(RestoreState.RESTORE_REMOTE)
        source = await self._restore_remote()
        if source:
            return decide(RestoreOutcome.RESTORED_FROM_REMOTE, source)

        attempts.append(RestoreState.FRESH_INIT)
        self._fresh_init()
        return decide(RestoreOutcome.FRESH_INITIALIZED)

    def _restore_local(self) -> str | None:
        try:
            latest = self.snapshots.latest_snapshot()
            if latest is None:
                logger.info("No local snapshot available")
                return None

            if not self.checker.is_valid(latest.path):
                logger.warning("Newest local snapshot is invalid", extra={"snapshot": latest.filename})
                return None

            install_database_file(latest.path, self.db_path)
            if not self.checker.is_valid(self.db_path):
                logger.warning("Database invalid after local restore", extra={"snapshot": latest.filename})
                return None

            return str(latest.path)

        except Exception as e:
            logger.error(f"Local restore failed: {e}", exc_info=True)
            return None

    async def _restore_remote(self) -> str | None:
        if self.remote is None:
            logger.info("No remote restore source configured")
            return None

        download_path = self.db_path.with_name(f".{self.db_path.name}.remote.partial")
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            location = await self.remote.fetch(download_path)

            if not self.checker.is_valid(download_path):
                logger.warning("Remote database is invalid", extra={"source": location})
                return None

            install_database_file(download_path, self.db_path)
            if not self.checker.is_valid(self.db_path):
                logger.warning("Database invalid after remote restore", extra={"source": location})
                return None

            return location

        except Exception as e:
            logger.error(
                f"Remote restore failed: {e}",
                extra={"source": self.remote.describe()},
                exc_info=True,
            )
            return None

        finally:
            if download_path.exists():
                download_path.unlink()
            remove_sidecars(download_path)

    def _fresh_init(self) -> None:
        for path in [self.db_path] + [
            self.db_path.with_name(self.db_path.name + suffix) for suffix in SIDECAR_SUFFIXES
        ]:
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

        try:
            self.database.initialize_schema()
        except Exception as e:
            raise RestoreExhaustedError(
                f"Fresh initialization failed: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

        report = self.checker.check(self.db_path)
        if not report.valid:
            raise RestoreExhaustedError(
                f"Database invalid after fresh initialization: {report.reason}",
                details={"db_path": str(self.db_path), "reason": report.reason},
            )

        logger.warning("Initialized empty database", extra={"db_path": str(self.db_path)})
