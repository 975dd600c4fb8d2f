"""Background mirroring of backup records to the ledger.

A record is inserted into the primary store as ``LEDGER_PENDING`` and then
handed to ``LedgerMirrorWorker.schedule``.  The worker submits it to the
ledger with bounded retries and moves the primary record to ``ACTIVE``
(with the ledger transaction id) or ``FAILED`` once the budget runs out.

Submissions for different backups run concurrently.  A backup id has at
most one submission task in flight; scheduling it again returns the same
task, so retries for one id are always serial.
"""

import asyncio
import logging

from ledger_backup.adapters.base import LedgerMirror, PrimaryMetadataStore
from ledger_backup.config.models import RetrySettings
from ledger_backup.errors import BackupError, LedgerUnavailableError
from ledger_backup.models import BackupFilter, BackupRecord, BackupStatus
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)


class LedgerMirrorWorker:
    """Mirrors records to the ledger and settles their primary status.

    Args:
        ledger: Ledger receiving the records.
        primary: Primary store whose status is updated after mirroring.
        retry: Backoff settings for ledger submissions.
    """

    def __init__(
        self,
        ledger: LedgerMirror,
        primary: PrimaryMetadataStore,
        retry: RetrySettings,
    ) -> None:
        self.ledger = ledger
        self.primary = primary
        self.retry = retry
        self._tasks: dict[str, asyncio.Task[BackupStatus]] = {}

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._tasks)

    def schedule(self, record: BackupRecord) -> asyncio.Task[BackupStatus]:
        """Start mirroring ``record`` unless a task for its id is running."""
        task = self._tasks.get(record.backup_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(
            self._mirror(record), name=f"mirror-{record.backup_id}"
        )
        self._tasks[record.backup_id] = task
        task.add_done_callback(lambda t, bid=record.backup_id: self._forget(bid, t))
        return task

    def _forget(self, backup_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(backup_id) is task:
            del self._tasks[backup_id]

    async def mirror(self, record: BackupRecord) -> BackupStatus:
        """Schedule ``record`` and wait for its final status."""
        return await self.schedule(record)

    async def _mirror(self, record: BackupRecord) -> BackupStatus:
        try:
            tx_id = await call_with_retry(
                lambda: self.ledger.submit(record),
                settings=self.retry,
                error_type=LedgerUnavailableError,
                description=f"Ledger submit of {record.backup_id}",
                backup_id=record.backup_id,
                step="ledger_submit",
            )
        except BackupError as e:
            logger.warning(
                "Mirroring %s failed, marking FAILED: %s", record.backup_id, e
            )
            await self._settle(record.backup_id, BackupStatus.FAILED)
            return BackupStatus.FAILED

        await self._settle(record.backup_id, BackupStatus.ACTIVE, tx_id)
        logger.info("Mirrored %s to ledger (tx %s)", record.backup_id, tx_id)
        return BackupStatus.ACTIVE

    async def _settle(
        self,
        backup_id: str,
        status: BackupStatus,
        ledger_tx_id: str | None = None,
    ) -> None:
        # A primary outage here leaves the record LEDGER_PENDING for resubmit_pending()
        try:
            await self.primary.update_status(backup_id, status, ledger_tx_id)
        except Exception as e:
            logger.warning(
                "Could not record %s status %s in primary store: %s",
                backup_id,
                status.value,
                e,
            )

    async def drain(self) -> None:
        """Wait for every in-flight submission to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def resubmit_pending(self) -> list[str]:
        """Reschedule records left ``LEDGER_PENDING`` (e.g. after a crash).

        Returns:
            Backup ids that were scheduled.
        """
        pending = await self.primary.query(
            BackupFilter(status=[BackupStatus.LEDGER_PENDING])
        )
        for record in pending:
            self.schedule(record)
        logger.info("Rescheduled %d pending ledger submission(s)", len(pending))
        return [r.backup_id for r in pending]
