"""Backup service facade.

Wires the engines to one set of injected collaborators and exposes the
operation surface used by callers (the CLI, a web layer, a scheduler).
Nothing here is a module-level singleton; build one service per set of
stores.

Usage:
    from ledger_backup.service import BackupService

    service = BackupService(storage, primary, ledger, data, config)
    result = await service.create_full_backup("admin-1")
    listing = await service.list_backups(limit=10)
"""

import asyncio
import logging

from ledger_backup.adapters.base import (
    DataSource,
    LedgerMirror,
    PrimaryMetadataStore,
    StorageAdapter,
)
from ledger_backup.backup.engine import BackupEngine
from ledger_backup.backup.mirror import LedgerMirrorWorker
from ledger_backup.config.models import BackupConfig
from ledger_backup.locking import OperationLocks
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    BackupType,
    CleanupResult,
    CreateResult,
    LedgerStats,
    ListResult,
    RecoveryReport,
    RestoreReport,
    RetentionPolicy,
    StorageStats,
    TriggerMethod,
    VerificationResult,
)
from ledger_backup.query import ListQueryService
from ledger_backup.reconcile import ReconciliationService
from ledger_backup.recovery import EmergencyRecoveryCoordinator
from ledger_backup.restore.engine import RestoreEngine
from ledger_backup.retention import RetentionManager

logger = logging.getLogger(__name__)


class BackupService:
    """All backup, restore, and retention operations over one set of stores."""

    def __init__(
        self,
        storage: StorageAdapter,
        primary: PrimaryMetadataStore,
        ledger: LedgerMirror,
        data: DataSource,
        config: BackupConfig | None = None,
    ) -> None:
        self.config = config or BackupConfig()
        self.storage = storage
        self.primary = primary
        self.ledger = ledger
        self.data = data
        self.locks = OperationLocks()

        settings, retry = self.config.backup, self.config.retry
        self.mirror = LedgerMirrorWorker(ledger, primary, retry)
        self.query = ListQueryService(primary, ledger, settings, retry)
        self.reconciliation = ReconciliationService(primary, ledger, settings)
        self.backups = BackupEngine(
            storage, primary, data, self.mirror, self.locks, settings, retry
        )
        self.restores = RestoreEngine(storage, data, self.query, self.locks, settings, retry)
        self.recovery = EmergencyRecoveryCoordinator(
            primary, ledger, self.restores, settings, retry
        )
        self.retention = RetentionManager(storage, primary, ledger, self.query, retry)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_full_backup(
        self,
        triggered_by: str,
        *,
        trigger_method: TriggerMethod = TriggerMethod.MANUAL,
        wait_for_mirror: bool = False,
    ) -> CreateResult:
        result = await self.backups.create_full(
            triggered_by, trigger_method=trigger_method, wait_for_mirror=wait_for_mirror
        )
        return await self._after_create(result)

    async def create_incremental_backup(
        self,
        parent_backup_id: str,
        *,
        triggered_by: str = "SYSTEM",
        trigger_method: TriggerMethod = TriggerMethod.MANUAL,
        wait_for_mirror: bool = False,
    ) -> CreateResult:
        result = await self.backups.create_incremental(
            parent_backup_id,
            triggered_by=triggered_by,
            trigger_method=trigger_method,
            wait_for_mirror=wait_for_mirror,
        )
        return await self._after_create(result)

    async def _after_create(self, result: CreateResult) -> CreateResult:
        """Run automatic retention cleanup.  A cleanup failure never fails the create."""
        if not self.config.retention.auto_cleanup:
            return result
        if result.record.status is BackupStatus.FAILED:
            logger.info("Skipping automatic cleanup after failed %s", result.record.backup_id)
            return result
        try:
            cleanup = await self.cleanup_old_backups()
        except Exception as e:
            logger.error("Automatic cleanup after %s failed: %r", result.record.backup_id, e)
            cleanup = CleanupResult(errors={"*": repr(e)})
        return result.model_copy(update={"cleanup": cleanup})

    async def wait_for_mirroring(self) -> None:
        await self.mirror.drain()

    async def resubmit_pending(self) -> list[str]:
        return await self.mirror.resubmit_pending()

    async def close(self) -> None:
        """Wait for pending mirroring, then release the primary store's pool."""
        await self.mirror.drain()
        close = getattr(self.primary, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_backups(
        self, filter: BackupFilter | None = None, limit: int | None = None
    ) -> ListResult:
        return await self.query.list(filter, limit)

    async def get_backup(self, backup_id: str) -> BackupRecord:
        return await self.query.get(backup_id)

    async def verify_backup(self, backup_id: str) -> VerificationResult:
        return await self.reconciliation.verify(backup_id)

    async def verify_all_backups(
        self, filter: BackupFilter | None = None
    ) -> list[VerificationResult]:
        return await self.reconciliation.verify_all(filter)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_full(self, backup_id: str, *, safe_mode: bool = False) -> RestoreReport:
        return await self.restores.restore_full(backup_id, safe_mode=safe_mode)

    async def restore_chain(
        self, backup_id: str, *, cancel: asyncio.Event | None = None
    ) -> RestoreReport:
        return await self.restores.restore_from_chain(backup_id, cancel=cancel)

    async def emergency_recovery(self, *, force: bool = False) -> RecoveryReport:
        return await self.recovery.emergency_recovery(force=force)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def delete_backup(self, backup_id: str, *, purge_primary: bool = False) -> BackupRecord:
        return await self.retention.delete_backup(backup_id, purge_primary=purge_primary)

    async def cleanup_old_backups(
        self, policy: RetentionPolicy | None = None
    ) -> CleanupResult:
        return await self.retention.cleanup_old_backups(
            policy or self.config.retention.to_policy()
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_storage_stats(self) -> StorageStats:
        """Usage of ACTIVE backups against the configured storage limit."""
        settings = self.config.storage
        listing = await self.query.list(BackupFilter(status=BackupStatus.ACTIVE))
        records = listing.records
        used = sum(r.size_bytes for r in records)
        percent = round(used / settings.limit_bytes * 100, 2) if settings.limit_bytes else 0.0

        if percent >= settings.critical_percent:
            alert = "CRITICAL"
        elif percent >= settings.warning_percent:
            alert = "WARNING"
        else:
            alert = "OK"
        if alert != "OK":
            logger.warning("Backup storage at %.2f%% of limit (%s)", percent, alert)

        timestamps = [r.created_at for r in records]
        return StorageStats(
            source=listing.source,
            total_backups=len(records),
            full_backups=sum(1 for r in records if r.type is BackupType.FULL),
            incremental_backups=sum(1 for r in records if r.type is BackupType.INCREMENTAL),
            used_bytes=used,
            limit_bytes=settings.limit_bytes,
            usage_percentage=percent,
            alert_level=alert,
            oldest_backup=min(timestamps) if timestamps else None,
            newest_backup=max(timestamps) if timestamps else None,
        )

    async def get_ledger_stats(self) -> LedgerStats:
        try:
            return await asyncio.wait_for(self.ledger.stats(), timeout=self.config.retry.timeout)
        except Exception as e:
            logger.warning("Ledger stats unavailable: %r", e)
            return LedgerStats(available=False, error=repr(e))
