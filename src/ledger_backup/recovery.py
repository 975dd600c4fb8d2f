"""Ledger-driven emergency recovery.

Used when the primary metadata store is gone.  Backup metadata is read
from the ledger only, the newest restorable chain is chosen by a pure
function of that metadata, and the chain is restored through the restore
engine.  Running recovery twice against an unchanged ledger picks the same
chain, and the second run is a no-op once live data already matches it.
"""

import asyncio
import logging
from collections import defaultdict

from ledger_backup.adapters.base import LedgerMirror, PrimaryMetadataStore
from ledger_backup.config.models import BackupSettings, RetrySettings
from ledger_backup.errors import (
    BackupError,
    BackupStateError,
    LedgerUnavailableError,
    NotFoundError,
)
from ledger_backup.models import (
    BackupRecord,
    BackupStatus,
    BackupType,
    RecoveryReport,
)
from ledger_backup.restore.engine import RestoreEngine
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)


def _newness(record: BackupRecord) -> tuple:
    return (record.created_at, record.backup_id)


def select_recovery_target(records: list[BackupRecord]) -> list[BackupRecord]:
    """Choose the chain to recover to.

    Picks the most recent ACTIVE FULL backup (ties broken by backup id),
    then the longest run of ACTIVE incrementals descending from it.  When
    branches are equally long, the one whose tip is newest wins, then the
    higher tip id.

    Returns:
        The chosen chain, FULL first, or an empty list if there is no
        ACTIVE FULL backup.
    """
    active = [r for r in records if r.status is BackupStatus.ACTIVE]
    fulls = [r for r in active if r.type is BackupType.FULL]
    if not fulls:
        return []
    root = max(fulls, key=_newness)

    children: dict[str, list[BackupRecord]] = defaultdict(list)
    for record in active:
        if record.type is BackupType.INCREMENTAL:
            children[record.parent_backup_id].append(record)

    def best_path(node: BackupRecord, visited: frozenset[str]) -> list[BackupRecord]:
        best: list[BackupRecord] = []
        for child in children.get(node.backup_id, []):
            if child.backup_id in visited or child.created_at < node.created_at:
                continue
            path = best_path(child, visited | {child.backup_id})
            if not best or (len(path), _newness(path[-1])) > (len(best), _newness(best[-1])):
                best = path
        return [node] + best

    return best_path(root, frozenset({root.backup_id}))


class EmergencyRecoveryCoordinator:
    """Restores from ledger metadata when the primary store is unreachable."""

    def __init__(
        self,
        primary: PrimaryMetadataStore,
        ledger: LedgerMirror,
        restore: RestoreEngine,
        settings: BackupSettings | None = None,
        retry: RetrySettings | None = None,
    ) -> None:
        self.primary = primary
        self.ledger = ledger
        self.restore = restore
        self.settings = settings or BackupSettings()
        self.retry = retry or RetrySettings()

    async def primary_reachable(self) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    self.primary.ping(), timeout=self.settings.primary_timeout
                )
            )
        except Exception as e:
            logger.info("Primary store unreachable: %r", e)
            return False

    async def emergency_recovery(
        self,
        *,
        force: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> RecoveryReport:
        """Recover live data from the newest chain recorded in the ledger.

        Args:
            force: Run even though the primary store answers.
            cancel: Forwarded to the chain restore.

        Raises:
            BackupStateError: If the primary store is reachable and ``force``
                is not set.
            LedgerUnavailableError: If the ledger cannot be read (no restore
                is attempted).
            NotFoundError: If the ledger has no ACTIVE FULL backup.
        """
        if not force and await self.primary_reachable():
            raise BackupStateError(
                "Primary store is reachable; use restore_chain or pass force=True",
                step="emergency_recovery",
            )

        records = await call_with_retry(
            lambda: self.ledger.query_all(None),
            settings=self.retry,
            error_type=LedgerUnavailableError,
            description="Ledger query for emergency recovery",
            step="emergency_recovery",
        )
        records = [BackupRecord.model_validate(r) for r in records]

        chain = select_recovery_target(records)
        if not chain:
            raise NotFoundError(
                "Ledger holds no ACTIVE FULL backup to recover from",
                step="emergency_recovery",
                ledger_records=len(records),
            )

        tip = chain[-1]
        report = RecoveryReport(
            backup_id=chain[0].backup_id,
            target_backup_id=tip.backup_id,
            chain_length=len(chain),
            chain=[r.backup_id for r in chain],
            ledger_records=len(records),
        )
        logger.warning(
            "Emergency recovery to %s (chain of %d from %s)",
            tip.backup_id,
            len(chain),
            chain[0].backup_id,
        )

        try:
            restored = await self.restore.restore_from_chain(
                tip.backup_id, cancel=cancel, records=records, skip_if_current=True
            )
        except BackupError as e:
            if e.report is None:
                raise
            report.steps = e.report.steps
            report.state = e.report.state
            report.error = e.to_dict()
            return report

        report.steps = restored.steps
        report.state = restored.state
        report.already_applied = bool(restored.steps) and all(
            s.outcome == "SKIPPED" for s in restored.steps
        )
        return report
