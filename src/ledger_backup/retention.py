"""Dependency-aware deletion and retention cleanup.

A backup can only be deleted once nothing live depends on it, so chains are
never cut in the middle.  ``cleanup_old_backups`` therefore deletes
leaf-first and reports candidates that are still anchored by a live child
as skipped.
"""

import logging

from ledger_backup.adapters.base import LedgerMirror, PrimaryMetadataStore, StorageAdapter
from ledger_backup.config.models import RetrySettings
from ledger_backup.errors import (
    BackupError,
    DependentsActiveError,
    LedgerUnavailableError,
    PrimaryUnavailableError,
    StorageError,
)
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    BackupType,
    CleanupResult,
    RetentionPolicy,
    newest_first,
    utcnow,
)
from ledger_backup.query import ListQueryService
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)


def retention_candidates(
    records: list[BackupRecord], policy: RetentionPolicy
) -> list[BackupRecord]:
    """ACTIVE backups that are too old or beyond the per-type count."""
    now = utcnow()
    candidates: dict[str, BackupRecord] = {}
    for backup_type in BackupType:
        typed = newest_first(
            [r for r in records if r.type is backup_type and r.status is BackupStatus.ACTIVE]
        )
        limit = policy.limit_for(backup_type)
        for index, record in enumerate(typed):
            too_many = limit is not None and index >= limit
            too_old = policy.max_age is not None and now - record.created_at > policy.max_age
            if too_many or too_old:
                candidates[record.backup_id] = record
    return list(candidates.values())


class RetentionManager:
    """Deletes backups without breaking live chains."""

    def __init__(
        self,
        storage: StorageAdapter,
        primary: PrimaryMetadataStore,
        ledger: LedgerMirror,
        query: ListQueryService,
        retry: RetrySettings | None = None,
    ) -> None:
        self.storage = storage
        self.primary = primary
        self.ledger = ledger
        self.query = query
        self.retry = retry or RetrySettings()

    async def delete_backup(
        self, backup_id: str, *, purge_primary: bool = False
    ) -> BackupRecord:
        """Delete one backup.

        Marks the primary record DELETED, appends a status change to the
        ledger, and removes the payload.  When the primary already shows the
        backup DELETED, only the ledger and payload steps that did not
        complete are redone, so a failed delete can be retried.

        Returns:
            The record as it stands after deletion.

        Raises:
            NotFoundError: If the backup is in neither store.
            DependentsActiveError: If a live backup has it as parent.
            PrimaryUnavailableError: If the primary store cannot be updated.
            LedgerUnavailableError: If the ledger status change fails.
            StorageError: If the payload cannot be removed.
        """
        record = await self.query.get(backup_id)
        if record.status is BackupStatus.DELETED:
            logger.info("Backup %s already deleted, finishing cleanup", backup_id)
        else:
            await self._check_dependents(backup_id)
            try:
                record = await self.primary.update_status(backup_id, BackupStatus.DELETED)
            except Exception as e:
                raise PrimaryUnavailableError(
                    f"Could not mark {backup_id} DELETED in primary store: {e}",
                    backup_id=backup_id,
                    step="primary_update",
                    cause=e,
                ) from e

        await call_with_retry(
            lambda: self._mark_ledger_deleted(backup_id),
            settings=self.retry,
            error_type=LedgerUnavailableError,
            description=f"Ledger status change of {backup_id}",
            backup_id=backup_id,
            step="ledger_mark_status",
        )
        await call_with_retry(
            lambda: self.storage.delete(record.cid),
            settings=self.retry,
            error_type=StorageError,
            description=f"Deleting payload {record.cid}",
            backup_id=backup_id,
            step="storage_delete",
        )

        if purge_primary:
            try:
                await self.primary.purge(backup_id)
            except Exception as e:
                raise PrimaryUnavailableError(
                    f"Could not purge {backup_id} from primary store: {e}",
                    backup_id=backup_id,
                    step="primary_purge",
                    cause=e,
                ) from e
        logger.info("Deleted backup %s", backup_id)
        return record

    async def _check_dependents(self, backup_id: str) -> None:
        dependents = await self.query.list(BackupFilter(parent_backup_id=backup_id))
        if dependents.source == "unavailable":
            raise PrimaryUnavailableError(
                f"Cannot check dependents of {backup_id}: {dependents.error}",
                backup_id=backup_id,
                step="check_dependents",
            )
        live = [r.backup_id for r in dependents.records if r.is_live]
        if live:
            raise DependentsActiveError(
                f"Backup {backup_id} has live dependents: {', '.join(live)}",
                backup_id=backup_id,
                step="check_dependents",
                dependents=live,
            )

    async def _mark_ledger_deleted(self, backup_id: str) -> str | None:
        mirrored = await self.ledger.query_by_id(backup_id)
        if mirrored is None:
            # Never mirrored (FAILED); the ledger has nothing to mark
            logger.warning("Backup %s not in ledger, skipping status change", backup_id)
            return None
        if mirrored.status is BackupStatus.DELETED:
            return mirrored.ledger_tx_id
        return await self.ledger.mark_status(backup_id, BackupStatus.DELETED)

    async def cleanup_old_backups(
        self, policy: RetentionPolicy | None = None
    ) -> CleanupResult:
        """Apply ``policy``.  Never raises; per-backup failures are collected."""
        policy = policy or RetentionPolicy()
        result = CleanupResult()

        listing = await self.query.list()
        if listing.source == "unavailable":
            result.errors["*"] = listing.error or "no metadata source available"
            return result

        records = {r.backup_id: r for r in listing.records}
        candidates = retention_candidates(listing.records, policy)
        # Children are always newer than parents, so newest first is leaf-first
        for candidate in newest_first(candidates):
            live_children = [
                r.backup_id
                for r in records.values()
                if r.parent_backup_id == candidate.backup_id and r.is_live
            ]
            if live_children:
                logger.info(
                    "Keeping %s: live dependents %s", candidate.backup_id, live_children
                )
                result.skipped_ids.append(candidate.backup_id)
                continue

            try:
                deleted = await self.delete_backup(
                    candidate.backup_id, purge_primary=policy.purge_primary
                )
            except BackupError as e:
                logger.warning("Retention delete of %s failed: %s", candidate.backup_id, e)
                result.errors[candidate.backup_id] = str(e)
                continue
            records[candidate.backup_id] = deleted.model_copy(
                update={"status": BackupStatus.DELETED}
            )
            result.deleted_ids.append(candidate.backup_id)

        logger.info(
            "Retention cleanup: %d deleted, %d skipped, %d failed",
            len(result.deleted_ids),
            len(result.skipped_ids),
            len(result.errors),
        )
        return result
