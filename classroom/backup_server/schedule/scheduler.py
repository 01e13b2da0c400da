"""
Recurring backup scheduler.

Wraps an APScheduler AsyncIOScheduler with a single cron job that fires the
backup pipeline on the running event loop.

Invariants:
    - At most one scheduled backup job exists
    - A job instance never overlaps itself (max_instances=1, coalesce)
    - next_backup_at in the registry follows the job after start and each fire
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import ScheduleConfig
from .status import StatusRegistry

logger = logging.getLogger(__name__)

JOB_ID = "classroom_backup"


class BackupScheduler:
    """Fires the backup pipeline on a cron schedule.

    Example:
        >>> scheduler = BackupScheduler(config.schedule, registry, subsystem.run_scheduled_backup)
        >>> scheduler.start()
        >>> scheduler.next_run_time
        datetime.datetime(2026, 1, 1, 4, 0, tzinfo=<DstTzInfo 'Asia/Hong_Kong' HKT+8:00:00 STD>)
    """

    def __init__(
        self,
        config: ScheduleConfig,
        registry: StatusRegistry,
        job: Callable[[], Awaitable[object]],
    ) -> None:
        self.config = config
        self.registry = registry
        self._job = job
        self.scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._started = False

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def start(self) -> None:
        """Install the cron job and start the scheduler (no-op when disabled)."""
        if not self.enabled:
            logger.info("Automatic backups disabled (AUTO_BACKUP_ENABLED=false)")
            self.registry.set_next_backup_at(None)
            return

        trigger = CronTrigger.from_crontab(self.config.cron, timezone=self.config.timezone)
        self.scheduler.add_job(
            self._fire,
            trigger,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        self._started = True
        self.registry.set_next_backup_at(self.next_run_time)
        logger.info(
            "Backup scheduler started",
            extra={
                "cron": self.config.cron,
                "timezone": self.config.timezone,
                "next_backup_at": str(self.next_run_time),
            },
        )

    def shutdown(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Backup scheduler stopped")

    async def _fire(self) -> None:
        try:
            await self._job()
        finally:
            self.registry.set_next_backup_at(self.next_run_time)
