"""Crash-safe restore of a single FULL backup or a backup chain.

A restore walks the state machine::

    IDLE -> VALIDATING -> STAGING -> APPLYING -> VERIFYING -> COMPLETE
                 \\           \\          \\           \\
                  +-----------+----------+-----------+--> FAILED

Chain restores loop ``VERIFYING -> STAGING`` once per link and may stop in
``CANCELLED`` at a link boundary.  A chain restore that finds the live
data already at the tip goes ``VALIDATING -> COMPLETE``.  Every payload is decoded and checked
against its recorded checksum before live data is touched, and a shadow
copy of the affected collections is taken before each apply so a failed
verification can be rolled back to the last good checkpoint.

Usage:
    engine = RestoreEngine(storage, data, query, locks)
    report = await engine.restore_full("FULL_20260101T000000000000Z")
    report = await engine.restore_from_chain("INC_20260102T000000000000Z")
"""

import asyncio
import logging
import time

from ledger_backup.adapters.base import DataSource, Dataset, StorageAdapter
from ledger_backup.backup.chain import fetch_payload, resolve_chain, stage_link
from ledger_backup.backup.payload import compute_checksum, dataset_counts, normalize_dataset
from ledger_backup.config.models import BackupSettings, RetrySettings
from ledger_backup.errors import (
    BackupError,
    BackupStateError,
    ChecksumMismatchError,
    StorageError,
)
from ledger_backup.locking import LockName, OperationLocks
from ledger_backup.models import (
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreReport,
    RestoreState,
    RestoreStep,
)
from ledger_backup.query import ListQueryService

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset(
    {RestoreState.COMPLETE, RestoreState.FAILED, RestoreState.CANCELLED}
)

TRANSITIONS: dict[RestoreState, frozenset[RestoreState]] = {
    RestoreState.IDLE: frozenset({RestoreState.VALIDATING}),
    RestoreState.VALIDATING: frozenset(
        {RestoreState.STAGING, RestoreState.COMPLETE, RestoreState.FAILED}
    ),
    RestoreState.STAGING: frozenset(
        {RestoreState.APPLYING, RestoreState.FAILED, RestoreState.CANCELLED}
    ),
    RestoreState.APPLYING: frozenset({RestoreState.VERIFYING, RestoreState.FAILED}),
    RestoreState.VERIFYING: frozenset(
        {RestoreState.STAGING, RestoreState.COMPLETE, RestoreState.FAILED}
    ),
    RestoreState.COMPLETE: frozenset({RestoreState.IDLE}),
    RestoreState.FAILED: frozenset({RestoreState.IDLE}),
    RestoreState.CANCELLED: frozenset({RestoreState.IDLE}),
}


class RestoreEngine:
    """Restores live data from stored backups.

    Args:
        storage: Payload storage.
        data: Live data source being restored.
        query: Metadata read path (primary first, ledger fallback).
        locks: Shared backup/restore locks.
        settings: Primary key and collection settings.
        retry: Backoff settings for payload fetches.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        data: DataSource,
        query: ListQueryService,
        locks: OperationLocks,
        settings: BackupSettings | None = None,
        retry: RetrySettings | None = None,
    ) -> None:
        self.storage = storage
        self.data = data
        self.query = query
        self.locks = locks
        self.settings = settings or BackupSettings()
        self.retry = retry or RetrySettings()
        self._state = RestoreState.IDLE

    @property
    def state(self) -> RestoreState:
        return self._state

    def _transition(self, target: RestoreState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid restore transition {self._state.value} -> {target.value}"
            )
        logger.debug("Restore state %s -> %s", self._state.value, target.value)
        self._state = target

    def _begin(self) -> None:
        if self._state in TERMINAL_STATES:
            self._transition(RestoreState.IDLE)
        self._transition(RestoreState.VALIDATING)

    def _fail(self, report: RestoreReport, error: BackupError, started: float) -> BackupError:
        if self._state not in TERMINAL_STATES:
            self._transition(RestoreState.FAILED)
        report.state = self._state
        report.error = error.to_dict()
        report.duration_seconds = time.monotonic() - started
        error.report = report
        logger.error("Restore of %s failed: %s", report.target_backup_id, error)
        return error

    # ------------------------------------------------------------------
    # Single FULL backup
    # ------------------------------------------------------------------

    async def restore_full(self, backup_id: str, *, safe_mode: bool = False) -> RestoreReport:
        """Restore one FULL backup.

        Destructive mode swaps each backed-up collection for its backup
        contents and verifies the result.  Safe mode upserts backed-up
        documents by primary key; documents absent from the backup are left
        alone and no collection is dropped.

        Raises:
            NotFoundError: If the backup is in neither store.
            BackupStateError: If it is not an ACTIVE FULL backup.
            ChecksumMismatchError: If the payload or the restored data fails
                verification (live data is left or rolled back unchanged).
            LockContentionError: If a backup or restore is running.
            StorageError: If the payload cannot be fetched or applied.
        """
        with self.locks.hold(LockName.RESTORE, owner=f"restore:{backup_id}"):
            return await self._restore_full(backup_id, safe_mode)

    async def _restore_full(self, backup_id: str, safe_mode: bool) -> RestoreReport:
        started = time.monotonic()
        report = RestoreReport(
            target_backup_id=backup_id,
            mode="safe" if safe_mode else "destructive",
            state=self._state,
            chain=[backup_id],
        )
        self._begin()
        pk = self.settings.primary_key

        try:
            record = await self.query.get(backup_id)
            if record.status is not BackupStatus.ACTIVE or record.type is not BackupType.FULL:
                raise BackupStateError(
                    f"Backup {backup_id} is {record.status.value} {record.type.value}, "
                    f"expected ACTIVE FULL",
                    backup_id=backup_id,
                    step="VALIDATING",
                    status=record.status.value,
                    type=record.type.value,
                )
            payload = await fetch_payload(self.storage, record, self.retry)
            state = stage_link(record, payload, None, pk)

            self._transition(RestoreState.STAGING)
            shadow = await self._snapshot(list(state))

            self._transition(RestoreState.APPLYING)
            await self._apply(record, state, shadow, safe_mode)

            self._transition(RestoreState.VERIFYING)
            if not safe_mode:
                await self._verify_live(record, state, shadow)
        except Exception as e:
            error = self._wrap(e, backup_id)
            report.rolled_back = error.context.get("rolled_back", False)
            report.steps.append(self._failed_step(backup_id, BackupType.FULL, error))
            raise self._fail(report, error, started)

        counts = dataset_counts(state)
        report.steps.append(
            RestoreStep(
                backup_id=backup_id,
                type=BackupType.FULL,
                outcome="APPLIED",
                collections=len(counts),
                documents=sum(counts.values()),
            )
        )
        self._transition(RestoreState.COMPLETE)
        return self._finish(report, record, counts, started)

    # ------------------------------------------------------------------
    # Chain
    # ------------------------------------------------------------------

    async def restore_from_chain(
        self,
        backup_id: str,
        *,
        cancel: asyncio.Event | None = None,
        records: list[BackupRecord] | None = None,
        skip_if_current: bool = False,
    ) -> RestoreReport:
        """Restore the chain ending at ``backup_id``, FULL first.

        Args:
            backup_id: Tip of the chain (FULL or INCREMENTAL).
            cancel: Checked after each link is staged; when set, the restore
                stops before applying that link and ends ``CANCELLED``.
            records: Metadata to resolve the chain from instead of the
                query service (used by emergency recovery).
            skip_if_current: When the live data already matches the tip's
                checksum, apply nothing and mark every link ``SKIPPED``.  The
                comparison runs under the restore lock.

        Raises:
            ChainBrokenError: If the chain cannot be resolved (nothing applied).
            ChecksumMismatchError: If a link fails verification.  Links
                already applied stay applied; the failing link is rolled back.
            LockContentionError: If a backup or restore is running.
            StorageError: If a payload cannot be fetched or applied.
        """
        with self.locks.hold(LockName.RESTORE, owner=f"restore-chain:{backup_id}"):
            return await self._restore_chain(backup_id, cancel, records, skip_if_current)

    async def _restore_chain(
        self,
        backup_id: str,
        cancel: asyncio.Event | None,
        records: list[BackupRecord] | None,
        skip_if_current: bool = False,
    ) -> RestoreReport:
        started = time.monotonic()
        report = RestoreReport(target_backup_id=backup_id, mode="chain", state=self._state)
        self._begin()
        pk = self.settings.primary_key

        if records is not None:
            by_id = {r.backup_id: r for r in records}

            async def lookup(link_id: str) -> BackupRecord | None:
                return by_id.get(link_id)
        else:
            lookup = self.query.lookup

        try:
            chain = await resolve_chain(backup_id, lookup)
        except Exception as e:
            raise self._fail(report, self._wrap(e, backup_id), started)

        report.chain = [r.backup_id for r in chain]
        logger.info("Restoring chain of %d link(s): %s", len(chain), report.chain)

        if skip_if_current and await self._matches_live(chain[-1]):
            logger.info("Live data already matches %s, nothing to apply", backup_id)
            report.steps = [
                RestoreStep(backup_id=r.backup_id, type=r.type, outcome="SKIPPED")
                for r in chain
            ]
            report.last_applied_backup_id = chain[-1].backup_id
            self._transition(RestoreState.COMPLETE)
            report.state = self._state
            report.duration_seconds = time.monotonic() - started
            return report

        state: Dataset | None = None
        counts: dict[str, int] = {}
        for record in chain:
            self._transition(RestoreState.STAGING)
            try:
                payload = await fetch_payload(self.storage, record, self.retry)
                state = stage_link(record, payload, state, pk)
            except Exception as e:
                error = self._wrap(e, record.backup_id)
                report.steps.append(self._failed_step(record.backup_id, record.type, error))
                raise self._fail(report, error, started)

            if cancel is not None and cancel.is_set():
                report.steps.append(
                    RestoreStep(backup_id=record.backup_id, type=record.type, outcome="CANCELLED")
                )
                self._transition(RestoreState.CANCELLED)
                logger.warning(
                    "Restore of %s cancelled before %s; last applied %s",
                    backup_id,
                    record.backup_id,
                    report.last_applied_backup_id,
                )
                report.state = self._state
                report.duration_seconds = time.monotonic() - started
                return report

            try:
                shadow = await self._snapshot(list(state))
                self._transition(RestoreState.APPLYING)
                await self._apply(record, state, shadow, safe_mode=False)
                self._transition(RestoreState.VERIFYING)
                await self._verify_live(record, state, shadow)
            except Exception as e:
                error = self._wrap(e, record.backup_id)
                report.rolled_back = error.context.get("rolled_back", False)
                report.steps.append(self._failed_step(record.backup_id, record.type, error))
                raise self._fail(report, error, started)

            counts = dataset_counts(state)
            report.steps.append(
                RestoreStep(
                    backup_id=record.backup_id,
                    type=record.type,
                    outcome="APPLIED",
                    collections=len(counts),
                    documents=sum(counts.values()),
                )
            )
            report.last_applied_backup_id = record.backup_id
            logger.info("Applied chain link %s", record.backup_id)

        self._transition(RestoreState.COMPLETE)
        return self._finish(report, chain[-1], counts, started)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def live_checksum(self, collections: list[str]) -> str:
        """Checksum of the live data restricted to ``collections``."""
        live = await self._snapshot(collections)
        return compute_checksum(live, self.settings.primary_key)

    async def _matches_live(self, record: BackupRecord) -> bool:
        try:
            live = await self.live_checksum(list(record.collections))
        except Exception as e:
            logger.warning("Could not checksum live data: %r", e)
            return False
        return live == record.checksum

    async def _snapshot(self, collections: list[str]) -> Dataset:
        return normalize_dataset(await self.data.snapshot(collections))

    async def _apply(
        self,
        record: BackupRecord,
        state: Dataset,
        shadow: Dataset,
        safe_mode: bool,
    ) -> None:
        try:
            if safe_mode:
                await self.data.upsert_documents(state)
            else:
                await self.data.replace_collections(state)
        except Exception as e:
            rolled_back = await self._rollback(record, shadow)
            raise StorageError(
                f"Applying {record.backup_id} failed: {e}",
                backup_id=record.backup_id,
                step="APPLYING",
                cause=e,
                rolled_back=rolled_back,
            ) from e

    async def _verify_live(
        self, record: BackupRecord, state: Dataset, shadow: Dataset
    ) -> None:
        actual = await self.live_checksum(list(state))
        if actual == record.checksum:
            return
        rolled_back = await self._rollback(record, shadow)
        raise ChecksumMismatchError(
            f"Live data after restoring {record.backup_id} does not match: "
            f"expected {record.checksum}, got {actual}",
            backup_id=record.backup_id,
            step="VERIFYING",
            expected=record.checksum,
            actual=actual,
            rolled_back=rolled_back,
        )

    async def _rollback(self, record: BackupRecord, shadow: Dataset) -> bool:
        try:
            await self.data.replace_collections(shadow)
        except Exception as e:
            logger.critical(
                "Rollback after %s failed, live data may be inconsistent: %s",
                record.backup_id,
                e,
            )
            return False
        logger.warning("Rolled back live data after failed apply of %s", record.backup_id)
        return True

    def _wrap(self, error: Exception, backup_id: str) -> BackupError:
        if isinstance(error, BackupError):
            return error
        wrapped = StorageError(
            f"Restore of {backup_id} failed during {self._state.value}: {error!r}",
            backup_id=backup_id,
            step=self._state.value,
            cause=error,
        )
        wrapped.__cause__ = error
        return wrapped

    @staticmethod
    def _failed_step(backup_id: str, backup_type: BackupType, error: BackupError) -> RestoreStep:
        return RestoreStep(
            backup_id=backup_id,
            type=backup_type,
            outcome="FAILED",
            error=str(error),
        )

    def _finish(
        self,
        report: RestoreReport,
        record: BackupRecord,
        counts: dict[str, int],
        started: float,
    ) -> RestoreReport:
        report.state = self._state
        report.collections_restored = len(counts)
        report.documents_restored = sum(counts.values())
        report.last_applied_backup_id = record.backup_id
        report.duration_seconds = time.monotonic() - started
        logger.info(
            "Restored %s: %d collection(s), %d document(s) in %.2fs",
            record.backup_id,
            report.collections_restored,
            report.documents_restored,
            report.duration_seconds,
        )
        return report
