"""
Backup subsystem lifecycle object.

One BackupSubsystem is constructed at process start and shared by the
scheduler, the HTTP surface and the CLI. It owns every backup component and
runs the backup pipeline:

    integrity check -> snapshot -> verify snapshot -> rotate -> deliver

Outcomes:
    success                   snapshot created, no channel failed
    integrity-failed          live database failed the pre-snapshot check
    snapshot-failed           snapshot could not be created or verified
    partial-delivery-failure  snapshot created, at least one channel failed

Invariants:
    - At most one pipeline run (or operator restore) is in flight; overlapping
      triggers are rejected with BackupAlreadyRunningError
    - is_running is true whenever a run or an operator restore holds the lock
    - A local snapshot is kept even when every delivery channel fails
    - Every finished run updates the StatusRegistry and the run log
    - Backup failures are recorded, never raised into the application
    - With BACKUP_NOTIFY_ON_FAILURE, a failed run also emails a short report;
      notification errors are logged only

How to change safely:
    - Keep rotation after snapshot verification
    - New pipeline steps must record their failures as a run outcome
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .config import ServerConfig
from .database import ClassroomDatabase, remove_sidecars
from .delivery import (
    Channel,
    ChannelResult,
    ChannelStatus,
    DeliveryDispatcher,
    EmailChannel,
    outcome_for,
)
from .errors import (
    BackupAlreadyRunningError,
    BackupError,
    InvalidSnapshotError,
    SnapshotNotFoundError,
)
from .history import DEFAULT_TAIL_LINES, RunLog
from .integrity import IntegrityChecker, IntegrityReport
from .restore import RemoteSource, RestoreCoordinator, RestoreDecision, build_remote_source
from .restore.coordinator import install_database_file
from .schedule import BackupScheduler, StatusRegistry
from .snapshot import Snapshot, SnapshotManager

logger = logging.getLogger(__name__)


class BackupTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    STARTUP = "startup"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    INTEGRITY_FAILED = "integrity-failed"
    SNAPSHOT_FAILED = "snapshot-failed"
    PARTIAL_DELIVERY_FAILURE = "partial-delivery-failure"


@dataclass
class BackupRun:
    """One execution of the backup pipeline.

    Attributes:
        run_id: Short random identifier
        trigger: What started the run
        started_at: Start time (UTC)
        finished_at: End time (UTC), set when the run finishes
        outcome: Terminal outcome
        snapshot: Snapshot produced by the run, if any
        channel_results: Delivery result per channel
        error: Summary of what went wrong, if anything
    """

    run_id: str
    trigger: BackupTrigger
    started_at: datetime
    finished_at: datetime | None = None
    outcome: RunOutcome | None = None
    snapshot: Snapshot | None = None
    channel_results: dict[Channel, ChannelResult] = field(default_factory=dict)
    error: str | None = None

    def finish(self, outcome: RunOutcome, error: str | None = None) -> BackupRun:
        self.outcome = outcome
        self.error = error
        self.finished_at = datetime.now(timezone.utc)
        return self

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "channel_results": {c.value: r.to_dict() for c, r in self.channel_results.items()},
            "error": self.error,
        }


def parse_channels(values: Iterable[str | Channel] | None) -> list[Channel] | None:
    """Normalize a channel selection (None = default channels)."""
    if values is None:
        return None
    return [v if isinstance(v, Channel) else Channel.parse(v) for v in values]


class BackupSubsystem:
    """Owns the backup components and exposes operator operations.

    Example:
        >>> subsystem = BackupSubsystem.from_config(ServerConfig.from_env())
        >>> decision = await subsystem.startup()
        >>> run = await subsystem.trigger_backup()
        >>> run.outcome
        <RunOutcome.SUCCESS: 'success'>
    """

    def __init__(
        self,
        config: ServerConfig,
        dispatcher: DeliveryDispatcher | None = None,
        remote: RemoteSource | None = None,
    ) -> None:
        """Initialize the subsystem.

        Args:
            config: Server configuration
            dispatcher: Delivery dispatcher (defaults to one built from config)
            remote: Remote restore source (None = no remote fallback)
        """
        self.config = config
        storage = config.storage

        self.database = ClassroomDatabase(storage.db_path, busy_timeout_ms=storage.busy_timeout_ms)
        self.checker = IntegrityChecker(busy_timeout_ms=storage.busy_timeout_ms)
        self.snapshots = SnapshotManager(storage.db_path, storage.backup_dir, prefix=storage.file_prefix)
        self.dispatcher = dispatcher or DeliveryDispatcher.from_config(config)
        self.registry = StatusRegistry(error_capacity=config.observability.error_log_size)
        self.run_log = RunLog(config.observability.backup_log_file)
        self.notifier = EmailChannel(config.email)
        self.coordinator = RestoreCoordinator(self.database, self.snapshots, self.checker, remote)
        self.scheduler = BackupScheduler(config.schedule, self.registry, self.run_scheduled_backup)

        self._lock = asyncio.Lock()
        self._protective_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: ServerConfig) -> BackupSubsystem:
        return cls(config, remote=build_remote_source(config))

    @property
    def db_path(self) -> Path:
        return self.database.path

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def startup(self) -> RestoreDecision:
        """Recover the database and schedule a protective snapshot if needed.

        Raises:
            RestoreExhaustedError: If no valid database could be produced
        """
        self.snapshots.ensure_backup_dir()
        decision = await self.coordinator.run()

        if decision.needs_protective_snapshot:
            delay = self.config.schedule.protective_snapshot_delay_seconds
            self._protective_task = asyncio.create_task(self._protective_snapshot(delay))
            logger.info(
                "Protective snapshot scheduled",
                extra={"delay_seconds": delay, "restore_outcome": decision.outcome.value},
            )

        return decision

    def start_scheduler(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        if self._protective_task and not self._protective_task.done():
            self._protective_task.cancel()
            try:
                await self._protective_task
            except asyncio.CancelledError:
                pass
        self._protective_task = None

    async def wait_for_protective_snapshot(self) -> BackupRun | None:
        """Await the pending protective snapshot, if one was scheduled."""
        if self._protective_task is None:
            return None
        return await self._protective_task

    async def _protective_snapshot(self, delay: float) -> BackupRun | None:
        await asyncio.sleep(delay)
        try:
            return await self.run_backup(BackupTrigger.STARTUP, channels=[])
        except BackupAlreadyRunningError:
            logger.warning("Protective snapshot skipped: a backup run is already in progress")
            return None

    # =========================================================================
    # Backup pipeline
    # =========================================================================

    async def run_scheduled_backup(self) -> BackupRun | None:
        """Scheduler job: run the pipeline, logging instead of raising on overlap."""
        try:
            return await self.run_backup(BackupTrigger.SCHEDULED)
        except BackupAlreadyRunningError:
            return None

    async def run_backup(
        self,
        trigger: BackupTrigger,
        channels: Iterable[str | Channel] | None = None,
        force: bool = False,
    ) -> BackupRun:
        """Run the backup pipeline once.

        Args:
            trigger: What started the run
            channels: Explicit delivery channels (None = every configured channel,
                empty = local snapshot only)
            force: Skip the integrity gates and snapshot even a failing database

        Returns:
            The finished BackupRun

        Raises:
            BackupAlreadyRunningError: If another run is in flight
        """
        selected = parse_channels(channels)

        if self._lock.locked():
            logger.warning("Backup trigger rejected: a run is already in progress", extra={"trigger": trigger.value})
            raise BackupAlreadyRunningError()

        async with self._lock:
            self.registry.mark_running()
            try:
                run = await self._execute(trigger, selected, force)
            finally:
                self.registry.mark_idle()
            self._record(run)

        if not run.succeeded:
            await self._notify_failure(run)
        return run

    async def _execute(
        self,
        trigger: BackupTrigger,
        channels: list[Channel] | None,
        force: bool,
    ) -> BackupRun:
        loop = asyncio.get_event_loop()
        run = BackupRun(
            run_id=uuid.uuid4().hex[:12],
            trigger=trigger,
            started_at=datetime.now(timezone.utc),
        )
        logger.info("Backup run started", extra={"run_id": run.run_id, "trigger": trigger.value, "force": force})

        # Step 1: Integrity gate on the live database
        if force:
            logger.warning("Integrity gates skipped (force)", extra={"run_id": run.run_id})
        else:
            report = await loop.run_in_executor(None, self.checker.check, self.db_path)
            if not report.valid:
                return run.finish(
                    RunOutcome.INTEGRITY_FAILED,
                    f"Database integrity check failed: {report.reason}"
                    + (f" ({report.detail})" if report.detail else ""),
                )

        # Step 2: Snapshot
        try:
            snapshot = await self.snapshots.create_snapshot_async()
        except Exception as e:
            logger.error(f"Snapshot failed: {e}", extra={"run_id": run.run_id}, exc_info=not isinstance(e, BackupError))
            return run.finish(RunOutcome.SNAPSHOT_FAILED, str(e))

        # Step 3: Verify the snapshot before it can push older ones out
        if not force:
            report = await loop.run_in_executor(None, self.checker.check, snapshot.path)
            if not report.valid:
                self._discard(snapshot)
                return run.finish(
                    RunOutcome.SNAPSHOT_FAILED,
                    f"Snapshot failed integrity check: {report.reason}",
                )
        run.snapshot = snapshot

        # Step 4: Rotate
        try:
            await self.snapshots.rotate_async(self.config.storage.retention_count)
        except Exception as e:
            logger.warning(f"Snapshot rotation failed: {e}", extra={"run_id": run.run_id})

        # Step 5: Deliver
        try:
            stats = await loop.run_in_executor(None, self.database.system_stats)
        except Exception as e:
            logger.warning(f"System statistics unavailable: {e}")
            stats = {}

        run.channel_results = await self.dispatcher.deliver(snapshot, channels=channels, system_stats=stats)

        if outcome_for(run.channel_results) == RunOutcome.PARTIAL_DELIVERY_FAILURE.value:
            failed = [
                f"{c.value}: {r.error}"
                for c, r in run.channel_results.items()
                if r.status == ChannelStatus.FAILED
            ]
            return run.finish(RunOutcome.PARTIAL_DELIVERY_FAILURE, "; ".join(failed))

        return run.finish(RunOutcome.SUCCESS)

    def _discard(self, snapshot: Snapshot) -> None:
        try:
            snapshot.path.unlink()
            remove_sidecars(snapshot.path)
        except OSError as e:
            logger.warning(f"Could not remove invalid snapshot: {e}", extra={"snapshot": snapshot.filename})

    async def _notify_failure(self, run: BackupRun) -> None:
        if not self.config.email.notify_on_failure:
            return
        try:
            await self.notifier.send_failure_notice(
                run.outcome.value,
                run.error,
                run.run_id,
                run.trigger.value,
                run.finished_at,
            )
        except Exception as e:
            logger.error(
                f"Backup failure notification not sent: {e}",
                extra={"run_id": run.run_id, "error_code": getattr(e, "code", None)},
            )

    def _record(self, run: BackupRun) -> None:
        self.registry.record_run(run.to_dict())
        if run.snapshot is not None:
            self.registry.record_backup(run.finished_at)
        if not run.succeeded:
            self.registry.record_error(run.outcome.value, run.error or "", run.finished_at)

        self.run_log.append(
            run.outcome.value,
            snapshot=run.snapshot.filename if run.snapshot else None,
            error=run.error,
            when=run.finished_at,
        )

        log = logger.info if run.succeeded else logger.error
        log(
            f"Backup run finished: {run.outcome.value}",
            extra={
                "run_id": run.run_id,
                "trigger": run.trigger.value,
                "snapshot": run.snapshot.filename if run.snapshot else None,
                "error": run.error,
            },
        )

    # =========================================================================
    # Operator surface
    # =========================================================================

    async def trigger_backup(
        self,
        channels: Iterable[str | Channel] | None = None,
        force: bool = False,
    ) -> BackupRun:
        """Run the pipeline now on behalf of an operator."""
        return await self.run_backup(BackupTrigger.MANUAL, channels=channels, force=force)

    def get_status(self) -> dict[str, Any]:
        status = self.registry.snapshot()
        status.update(
            {
                "auto_backup_enabled": self.config.schedule.enabled,
                "cron": self.config.schedule.cron,
                "timezone": self.config.schedule.timezone,
                "retention_count": self.config.storage.retention_count,
                "backup_dir": str(self.snapshots.backup_dir),
                "snapshot_count": len(self.snapshots.list_snapshots()),
                "channels": {
                    channel.value: bool(impl and impl.configured)
                    for channel in Channel
                    for impl in [self.dispatcher.get_channel(channel)]
                },
            }
        )
        return status

    def list_snapshots(self) -> list[Snapshot]:
        return self.snapshots.list_snapshots()

    async def check_integrity(self) -> IntegrityReport:
        """Integrity report for the live database."""
        return await asyncio.get_event_loop().run_in_executor(None, self.checker.check, self.db_path)

    def read_run_log(self, limit: int = DEFAULT_TAIL_LINES) -> list[str]:
        return self.run_log.tail(limit)

    async def restore_from(self, filename_or_path: str | Path) -> dict[str, Any]:
        """Replace the live database with a snapshot.

        A bare filename is looked up in the backup directory; anything else is
        treated as a path. The current database is copied aside as
        ``<db>.original_<unix_ms>`` first.

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist
            InvalidSnapshotError: If the snapshot fails the integrity check
            BackupAlreadyRunningError: If a backup run is in flight
        """
        source = self._resolve_snapshot(filename_or_path)

        if self._lock.locked():
            raise BackupAlreadyRunningError()

        async with self._lock:
            self.registry.mark_running()
            try:
                original_copy = await self._install_snapshot(source)
            finally:
                self.registry.mark_idle()

        logger.warning(
            "Database restored from snapshot",
            extra={
                "source": str(source),
                "db_path": str(self.db_path),
                "original_copy": str(original_copy) if original_copy else None,
            },
        )
        return {
            "restored_from": str(source),
            "db_path": str(self.db_path),
            "original_copy": str(original_copy) if original_copy else None,
        }

    async def _install_snapshot(self, source: Path) -> Path | None:
        loop = asyncio.get_event_loop()
        report = await loop.run_in_executor(None, self.checker.check, source)
        if not report.valid:
            raise InvalidSnapshotError(source.name, report.reason)

        original_copy = None
        if self.db_path.exists():
            original_copy = self.db_path.with_name(
                f"{self.db_path.name}.original_{int(time.time() * 1000)}"
            )
            await loop.run_in_executor(None, shutil.copy2, self.db_path, original_copy)

        await loop.run_in_executor(None, install_database_file, source, self.db_path)
        return original_copy

    def _resolve_snapshot(self, filename_or_path: str | Path) -> Path:
        name = str(filename_or_path)
        if Path(name).name == name:
            snapshot = self.snapshots.get_snapshot(name)
            if snapshot is not None:
                return snapshot.path
            candidate = self.snapshots.backup_dir / name
            if candidate.is_file():
                return candidate
            raise SnapshotNotFoundError(name)

        path = Path(name)
        if not path.is_file():
            raise SnapshotNotFoundError(name)
        return path
