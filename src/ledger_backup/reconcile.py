"""Cross-check primary and ledger copies of backup records.

A mismatch is an operational signal, not a program failure: ``verify``
returns it as a ``VerificationResult`` and never raises for drift,
absence, or an unreachable store.
"""

import asyncio
import logging

from ledger_backup.adapters.base import LedgerMirror, PrimaryMetadataStore
from ledger_backup.config.models import BackupSettings
from ledger_backup.errors import ErrorKind
from ledger_backup.models import BackupFilter, BackupRecord, VerificationResult

logger = logging.getLogger(__name__)

COMPARED_FIELDS = ("cid", "type", "status")


def compare_records(
    primary: BackupRecord | None, ledger: BackupRecord | None
) -> list[str]:
    """Names of compared fields that differ (or a presence marker)."""
    if primary is None and ledger is None:
        return ["missing_in_both"]
    if primary is None:
        return ["missing_in_primary"]
    if ledger is None:
        return ["missing_in_ledger"]
    return [f for f in COMPARED_FIELDS if getattr(primary, f) != getattr(ledger, f)]


class ReconciliationService:
    """Compares each backup's primary record against its ledger record."""

    def __init__(
        self,
        primary: PrimaryMetadataStore,
        ledger: LedgerMirror,
        settings: BackupSettings | None = None,
    ) -> None:
        self.primary = primary
        self.ledger = ledger
        self.settings = settings or BackupSettings()

    async def verify(self, backup_id: str) -> VerificationResult:
        primary_record, primary_error = await self._read(self.primary.get(backup_id))
        ledger_record, ledger_error = await self._read(self.ledger.query_by_id(backup_id))

        mismatched = compare_records(primary_record, ledger_record)
        match = not mismatched
        if not match:
            logger.warning("Reconciliation mismatch for %s: %s", backup_id, mismatched)

        return VerificationResult(
            backup_id=backup_id,
            match=match,
            primary_record=primary_record,
            ledger_record=ledger_record,
            mismatched_fields=mismatched,
            kind=None if match else ErrorKind.RECONCILIATION_MISMATCH.value,
            primary_error=primary_error,
            ledger_error=ledger_error,
        )

    async def verify_all(
        self, filter: BackupFilter | None = None
    ) -> list[VerificationResult]:
        """Reconcile every backup id known to either store."""
        ids: set[str] = set()
        for source in (self.primary.query(filter), self.ledger.query_all(filter)):
            records, error = await self._read(source)
            if error is not None:
                logger.warning("Listing for reconciliation failed: %s", error)
            ids.update(r.backup_id for r in records or [])
        return [await self.verify(backup_id) for backup_id in sorted(ids)]

    async def _read(self, call):
        try:
            return await asyncio.wait_for(call, timeout=self.settings.primary_timeout), None
        except Exception as e:
            return None, repr(e)
