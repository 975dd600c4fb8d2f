"""FULL and INCREMENTAL backup creation.

``create_full`` snapshots the data source, stores the compressed payload,
records it in the primary store as ``LEDGER_PENDING``, and hands it to the
mirror worker.  Either the payload and the primary record both exist or
neither does.

``create_incremental`` materializes the parent's state from storage and
stores only the documents upserted or deleted since then.  Chains are
capped at ``max_chain_depth`` incrementals; past that the call escalates to
a new FULL backup and reports ``chain_reset=True``.

Usage:
    engine = BackupEngine(storage, primary, data, mirror, locks, settings, retry)
    result = await engine.create_full("admin-1")
    result = await engine.create_incremental(result.record.backup_id)
"""

import asyncio
import logging
from datetime import datetime, timedelta

from ledger_backup.adapters.base import (
    DataSource,
    Dataset,
    PrimaryMetadataStore,
    StorageAdapter,
)
from ledger_backup.backup.chain import materialize, resolve_chain
from ledger_backup.backup.mirror import LedgerMirrorWorker
from ledger_backup.backup.payload import (
    apply_changes,
    compute_changes,
    compute_checksum,
    dataset_counts,
    encode_payload,
    full_body,
    incremental_body,
    normalize_dataset,
)
from ledger_backup.config.models import BackupSettings, RetrySettings
from ledger_backup.errors import (
    BackupStateError,
    NotFoundError,
    PrimaryUnavailableError,
    StorageError,
)
from ledger_backup.locking import LockName, OperationLocks
from ledger_backup.models import (
    BackupRecord,
    BackupStatus,
    BackupType,
    CollectionChange,
    CreateResult,
    TriggerMethod,
    utcnow,
)
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)

ID_PREFIXES = {BackupType.FULL: "FULL", BackupType.INCREMENTAL: "INC"}


def make_backup_id(backup_type: BackupType, created_at: datetime) -> str:
    """``FULL_20260101T120000123456Z`` / ``INC_...``."""
    return f"{ID_PREFIXES[backup_type]}_{created_at.strftime('%Y%m%dT%H%M%S%fZ')}"


class BackupEngine:
    """Creates backups and keeps storage and the primary store consistent."""

    def __init__(
        self,
        storage: StorageAdapter,
        primary: PrimaryMetadataStore,
        data: DataSource,
        mirror: LedgerMirrorWorker,
        locks: OperationLocks,
        settings: BackupSettings | None = None,
        retry: RetrySettings | None = None,
    ) -> None:
        self.storage = storage
        self.primary = primary
        self.data = data
        self.mirror = mirror
        self.locks = locks
        self.settings = settings or BackupSettings()
        self.retry = retry or RetrySettings()
        self._last_created: datetime | None = None

    def _next_timestamp(self) -> datetime:
        # Ids embed the timestamp; keep them strictly increasing per engine
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    # ------------------------------------------------------------------
    # FULL
    # ------------------------------------------------------------------

    async def create_full(
        self,
        triggered_by: str,
        *,
        trigger_method: TriggerMethod = TriggerMethod.MANUAL,
        wait_for_mirror: bool = False,
    ) -> CreateResult:
        """Create a FULL backup of every configured collection.

        Raises:
            LockContentionError: If a backup or restore is running.
            StorageError: If the payload could not be stored.
            PrimaryUnavailableError: If the primary record could not be written.
        """
        with self.locks.hold(LockName.BACKUP, owner=f"full:{triggered_by}"):
            record = await self._create_full(triggered_by, trigger_method)

        record = await self._after_create(record, wait_for_mirror)
        return CreateResult(record=record)

    async def _create_full(
        self, triggered_by: str, trigger_method: TriggerMethod
    ) -> BackupRecord:
        created_at = self._next_timestamp()
        backup_id = make_backup_id(BackupType.FULL, created_at)
        logger.info("Creating FULL backup %s (triggered by %s)", backup_id, triggered_by)

        state = await self._snapshot(backup_id)
        payload, uncompressed = encode_payload(full_body(backup_id, created_at, state))
        counts = dataset_counts(state)

        cid = await self._store(backup_id, payload)
        record = BackupRecord(
            backup_id=backup_id,
            type=BackupType.FULL,
            status=BackupStatus.LEDGER_PENDING,
            created_at=created_at,
            triggered_by=triggered_by,
            trigger_method=trigger_method,
            cid=cid,
            checksum=compute_checksum(state, self.settings.primary_key),
            size_bytes=len(payload),
            uncompressed_size=uncompressed,
            collections=counts,
            document_count=sum(counts.values()),
        )
        await self._insert(record)
        return record

    # ------------------------------------------------------------------
    # INCREMENTAL
    # ------------------------------------------------------------------

    async def create_incremental(
        self,
        parent_backup_id: str,
        *,
        triggered_by: str = "SYSTEM",
        trigger_method: TriggerMethod = TriggerMethod.MANUAL,
        wait_for_mirror: bool = False,
    ) -> CreateResult:
        """Create an INCREMENTAL backup on top of ``parent_backup_id``.

        Raises:
            NotFoundError: If the parent does not exist.
            BackupStateError: If the parent is not ACTIVE.
            ChainBrokenError: If the parent's chain cannot be resolved.
            ChecksumMismatchError: If a stored chain link is corrupt.
            LockContentionError: If a backup or restore is running.
            StorageError: If a payload could not be read or stored.
            PrimaryUnavailableError: If the parent chain could not be read or
                the primary record could not be written.
        """
        with self.locks.hold(LockName.BACKUP, owner=f"incremental:{parent_backup_id}"):
            parent = await self._primary_get(parent_backup_id)
            if parent is None:
                raise NotFoundError(
                    f"Parent backup {parent_backup_id} not found",
                    backup_id=parent_backup_id,
                    step="create_incremental",
                )
            if parent.status is not BackupStatus.ACTIVE:
                raise BackupStateError(
                    f"Parent backup {parent_backup_id} is {parent.status.value}, "
                    f"expected ACTIVE",
                    backup_id=parent_backup_id,
                    step="create_incremental",
                    status=parent.status.value,
                )

            chain = await resolve_chain(parent_backup_id, self._primary_get)
            depth = len(chain) - 1
            if depth >= self.settings.max_chain_depth:
                logger.info(
                    "Chain under %s has %d incrementals (max %d), creating FULL instead",
                    chain[0].backup_id,
                    depth,
                    self.settings.max_chain_depth,
                )
                record = await self._create_full(triggered_by, trigger_method)
                chain_reset = True
            else:
                record = await self._create_incremental(
                    chain, triggered_by, trigger_method
                )
                chain_reset = False

        record = await self._after_create(record, wait_for_mirror)
        return CreateResult(record=record, chain_reset=chain_reset)

    async def _create_incremental(
        self,
        chain: list[BackupRecord],
        triggered_by: str,
        trigger_method: TriggerMethod,
    ) -> BackupRecord:
        parent = chain[-1]
        pk = self.settings.primary_key
        created_at = self._next_timestamp()
        backup_id = make_backup_id(BackupType.INCREMENTAL, created_at)
        logger.info(
            "Creating INCREMENTAL backup %s on %s (triggered by %s)",
            backup_id,
            parent.backup_id,
            triggered_by,
        )

        base = await materialize(self.storage, chain, self.retry, pk)
        current = await self._snapshot(backup_id)
        changes = compute_changes(base, current, pk)
        state = apply_changes(base, changes, pk)

        payload, uncompressed = encode_payload(
            incremental_body(backup_id, created_at, parent.backup_id, changes)
        )
        counts = dataset_counts(state)

        cid = await self._store(backup_id, payload)
        record = BackupRecord(
            backup_id=backup_id,
            type=BackupType.INCREMENTAL,
            status=BackupStatus.LEDGER_PENDING,
            created_at=created_at,
            triggered_by=triggered_by,
            trigger_method=trigger_method,
            cid=cid,
            checksum=compute_checksum(state, pk),
            size_bytes=len(payload),
            uncompressed_size=uncompressed,
            parent_backup_id=parent.backup_id,
            collections=counts,
            document_count=sum(counts.values()),
            changes={
                name: CollectionChange(
                    upserted=len(change["upserted"]), deleted=len(change["deleted"])
                )
                for name, change in changes.items()
            },
        )
        await self._insert(record)
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _primary_get(self, backup_id: str) -> BackupRecord | None:
        """Primary lookup bounded by ``primary_timeout``."""
        try:
            return await asyncio.wait_for(
                self.primary.get(backup_id), timeout=self.settings.primary_timeout
            )
        except Exception as e:
            raise PrimaryUnavailableError(
                f"Could not read backup {backup_id} from primary store: {e!r}",
                backup_id=backup_id,
                step="primary_get",
                cause=e,
            ) from e

    async def _snapshot(self, backup_id: str) -> Dataset:
        try:
            data = await self.data.snapshot(self.settings.collections)
        except Exception as e:
            raise StorageError(
                f"Could not snapshot live data for {backup_id}: {e!r}",
                backup_id=backup_id,
                step="snapshot",
                cause=e,
            ) from e
        return normalize_dataset(data)

    async def _store(self, backup_id: str, payload: bytes) -> str:
        return await call_with_retry(
            lambda: self.storage.put(payload),
            settings=self.retry,
            error_type=StorageError,
            description=f"Storing payload of {backup_id}",
            backup_id=backup_id,
            step="storage_put",
        )

    async def _insert(self, record: BackupRecord) -> None:
        """Write the primary record, removing the stored blob on failure."""
        try:
            await self.primary.insert(record)
        except Exception as e:
            logger.error(
                "Primary insert of %s failed, removing payload %s: %s",
                record.backup_id,
                record.cid,
                e,
            )
            try:
                await self.storage.delete(record.cid)
            except Exception as cleanup_error:
                logger.warning(
                    "Could not remove orphaned payload %s: %s", record.cid, cleanup_error
                )
            raise PrimaryUnavailableError(
                f"Could not record backup {record.backup_id}: {e}",
                backup_id=record.backup_id,
                step="primary_insert",
                cause=e,
            ) from e
        logger.info(
            "Stored %s backup %s (%d bytes, cid %s)",
            record.type.value,
            record.backup_id,
            record.size_bytes,
            record.cid,
        )

    async def _after_create(
        self, record: BackupRecord, wait_for_mirror: bool
    ) -> BackupRecord:
        task = self.mirror.schedule(record)
        if not wait_for_mirror:
            return record
        await task
        try:
            return await self._primary_get(record.backup_id) or record
        except PrimaryUnavailableError as e:
            logger.warning("Could not re-read %s after mirroring: %s", record.backup_id, e)
            return record
