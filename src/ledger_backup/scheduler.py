"""Periodic backups, storage checks, and retention cleanup.

``BackupScheduler`` polls every ``poll_seconds`` and runs whichever jobs
are due:

- ``full``: a FULL backup every ``full_interval_hours`` (daily by default).
- ``incremental``: an INCREMENTAL on the newest ACTIVE backup every
  ``incremental_interval_hours`` (6h).  With no ACTIVE backup to build on
  it falls back to a FULL.
- ``storage``: ``get_storage_stats`` every ``storage_check_interval_hours``.
- ``cleanup``: the configured retention policy every
  ``cleanup_interval_hours``.

Scheduled backups carry ``trigger_method=CRON``.  A failing job is logged
and counted in ``status``; it never stops the scheduler.

Usage:
    scheduler = BackupScheduler(service)
    scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from ledger_backup.config.models import ScheduleSettings
from ledger_backup.errors import BackupError
from ledger_backup.models import (
    BackupFilter,
    BackupStatus,
    CleanupResult,
    CreateResult,
    SchedulerStatus,
    StorageStats,
    TriggerMethod,
    utcnow,
)
from ledger_backup.service import BackupService

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Runs backups and maintenance on fixed intervals.

    Args:
        service: Service the jobs run against.
        settings: Intervals; defaults to ``service.config.schedule``.
        clock: Returns the current UTC time (replaceable in tests).
    """

    def __init__(
        self,
        service: BackupService,
        settings: ScheduleSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service = service
        self.settings = settings or service.config.schedule
        self.clock = clock
        self.status = SchedulerStatus()
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the polling loop on the running event loop."""
        if self.running:
            logger.warning("Backup scheduler is already running")
            return self._task
        self.status.running = True
        self.status.started_at = self.clock()
        self._task = asyncio.create_task(self._run(), name="backup-scheduler")
        logger.info(
            "Backup scheduler started: full every %sh, incremental every %sh, "
            "storage check every %sh, cleanup every %sh",
            self.settings.full_interval_hours,
            self.settings.incremental_interval_hours,
            self.settings.storage_check_interval_hours,
            self.settings.cleanup_interval_hours,
        )
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and wait for it, letting a running job finish mirroring."""
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.status.running = False
        await self.service.wait_for_mirroring()
        logger.info("Backup scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_pending()
            except Exception:
                logger.exception("Backup scheduler pass failed")
            await asyncio.sleep(self.settings.poll_seconds)

    # ------------------------------------------------------------------
    # Due jobs
    # ------------------------------------------------------------------

    def _interval(self, job: str) -> timedelta | None:
        hours = {
            "full": self.settings.full_interval_hours,
            "incremental": self.settings.incremental_interval_hours,
            "storage": self.settings.storage_check_interval_hours,
            "cleanup": self.settings.cleanup_interval_hours,
        }[job]
        return timedelta(hours=hours) if hours > 0 else None

    def due(self, job: str, now: datetime | None = None) -> bool:
        interval = self._interval(job)
        if interval is None:
            return False
        last = self.status.last_run.get(job)
        return last is None or (now or self.clock()) - last >= interval

    async def run_pending(self) -> list[str]:
        """Run every due job once.  Returns the names of the jobs run.

        A FULL backup that runs in this pass also restarts the incremental
        interval, since an incremental on top of it would capture nothing.
        """
        now = self.clock()
        ran: list[str] = []

        if self.due("full", now):
            self.status.last_run["full"] = now
            await self.run_full()
            ran.append("full")
            if self._interval("incremental") is not None:
                self.status.last_run["incremental"] = now
        elif self.due("incremental", now):
            self.status.last_run["incremental"] = now
            await self.run_incremental()
            ran.append("incremental")

        if self.due("storage", now):
            self.status.last_run["storage"] = now
            await self.check_storage()
            ran.append("storage")
        if self.due("cleanup", now):
            self.status.last_run["cleanup"] = now
            await self.run_cleanup()
            ran.append("cleanup")
        return ran

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_full(self) -> CreateResult | None:
        logger.info("Scheduled FULL backup starting")
        try:
            result = await self.service.create_full_backup(
                self.settings.triggered_by,
                trigger_method=TriggerMethod.CRON,
                wait_for_mirror=True,
            )
        except BackupError as e:
            self._record_failure("full", e)
            return None
        self._record_backup(result)
        self.status.last_full_backup_id = result.record.backup_id
        return result

    async def run_incremental(self) -> CreateResult | None:
        listing = await self.service.list_backups(
            BackupFilter(status=BackupStatus.ACTIVE), limit=1
        )
        if listing.source == "unavailable":
            self.status.backups_failed += 1
            self.status.last_error = {
                "job": "incremental",
                "at": self.clock(),
                "message": f"No metadata source available: {listing.error}",
            }
            logger.error("Scheduled INCREMENTAL skipped: no metadata source available")
            return None
        if not listing.records:
            logger.info("No ACTIVE backup to build on, creating a FULL backup instead")
            return await self.run_full()

        tip = listing.records[0]
        logger.info("Scheduled INCREMENTAL backup on %s starting", tip.backup_id)
        try:
            result = await self.service.create_incremental_backup(
                tip.backup_id,
                triggered_by=self.settings.triggered_by,
                trigger_method=TriggerMethod.CRON,
                wait_for_mirror=True,
            )
        except BackupError as e:
            self._record_failure("incremental", e)
            return None
        self._record_backup(result)
        if result.chain_reset:
            self.status.last_full_backup_id = result.record.backup_id
        else:
            self.status.last_incremental_backup_id = result.record.backup_id
        return result

    async def check_storage(self) -> StorageStats:
        stats = await self.service.get_storage_stats()
        self.status.storage = stats
        logger.info(
            "Storage check: %.2f%% of limit used (%s)", stats.usage_percentage, stats.alert_level
        )
        return stats

    async def run_cleanup(self) -> CleanupResult:
        result = await self.service.cleanup_old_backups()
        self.status.last_cleanup = result
        return result

    def _record_backup(self, result: CreateResult) -> None:
        record = result.record
        if record.status is BackupStatus.FAILED:
            self.status.backups_failed += 1
            self.status.last_error = {
                "job": record.type.value.lower(),
                "at": self.clock(),
                "backup_id": record.backup_id,
                "message": "Ledger mirroring failed",
            }
            logger.error("Scheduled backup %s was not mirrored", record.backup_id)
            return
        self.status.backups_completed += 1
        logger.info("Scheduled backup %s completed", record.backup_id)

    def _record_failure(self, job: str, error: BackupError) -> None:
        self.status.backups_failed += 1
        self.status.last_error = {"job": job, "at": self.clock(), **error.to_dict()}
        logger.error("Scheduled %s backup failed: %s", job, error)
