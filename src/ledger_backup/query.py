"""Primary-first, ledger-fallback read path.

Every read goes to the primary store under a bounded timeout.  On timeout
or error the same query is answered from the ledger instead.  A response
always comes from exactly one source; when both stores are down
``list`` degrades to ``source="unavailable"`` rather than raising.
"""

import asyncio
import logging
from typing import Any

from ledger_backup.adapters.base import LedgerMirror, PrimaryMetadataStore
from ledger_backup.config.models import BackupSettings, RetrySettings
from ledger_backup.errors import LedgerUnavailableError, NotFoundError
from ledger_backup.models import BackupFilter, BackupRecord, ListResult, newest_first
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)


def normalize_records(
    raw: list[Any], filter: BackupFilter | None, limit: int | None
) -> list[BackupRecord]:
    """Validate, filter, sort newest first, and truncate."""
    records = [BackupRecord.model_validate(r) for r in raw]
    if filter is not None:
        records = [r for r in records if filter.matches(r)]
    records = newest_first(records)
    if limit is not None:
        records = records[: max(0, limit)]
    return records


class ListQueryService:
    """Reads backup records from the primary store or, failing that, the ledger."""

    def __init__(
        self,
        primary: PrimaryMetadataStore,
        ledger: LedgerMirror,
        settings: BackupSettings | None = None,
        retry: RetrySettings | None = None,
    ) -> None:
        self.primary = primary
        self.ledger = ledger
        self.settings = settings or BackupSettings()
        self.retry = retry or RetrySettings()

    async def list(
        self, filter: BackupFilter | None = None, limit: int | None = None
    ) -> ListResult:
        """List backups.  Never raises; see ``ListResult.source``."""
        try:
            raw = await asyncio.wait_for(
                self.primary.query(filter), timeout=self.settings.primary_timeout
            )
        except Exception as e:
            logger.warning("Primary query failed, falling back to ledger: %r", e)
        else:
            return ListResult(
                source="primary", records=normalize_records(raw, filter, limit)
            )

        try:
            raw = await call_with_retry(
                lambda: self.ledger.query_all(filter),
                settings=self.retry,
                error_type=LedgerUnavailableError,
                description="Ledger query",
                step="list",
            )
        except Exception as e:
            logger.error("Ledger query failed, no source available: %s", e)
            return ListResult(source="unavailable", error=str(e))

        return ListResult(source="ledger", records=normalize_records(raw, filter, limit))

    async def get(self, backup_id: str) -> BackupRecord:
        """Fetch one record.

        Raises:
            NotFoundError: If neither store has ``backup_id`` (or neither
                store could be reached).
        """
        record, _ = await self.get_with_source(backup_id)
        return record

    async def get_with_source(self, backup_id: str) -> tuple[BackupRecord, str]:
        primary_error: Exception | None = None
        try:
            found = await asyncio.wait_for(
                self.primary.get(backup_id), timeout=self.settings.primary_timeout
            )
        except Exception as e:
            primary_error = e
            logger.warning("Primary get of %s failed, trying ledger: %r", backup_id, e)
        else:
            if found is not None:
                return BackupRecord.model_validate(found), "primary"

        try:
            found = await call_with_retry(
                lambda: self.ledger.query_by_id(backup_id),
                settings=self.retry,
                error_type=LedgerUnavailableError,
                description=f"Ledger lookup of {backup_id}",
                backup_id=backup_id,
                step="get",
            )
        except LedgerUnavailableError as e:
            raise NotFoundError(
                f"Backup {backup_id} not found: no store reachable",
                backup_id=backup_id,
                step="get",
                cause=e,
                primary_error=repr(primary_error) if primary_error else None,
            ) from e

        if found is None:
            raise NotFoundError(
                f"Backup {backup_id} not found",
                backup_id=backup_id,
                step="get",
            )
        return BackupRecord.model_validate(found), "ledger"

    async def lookup(self, backup_id: str) -> BackupRecord | None:
        """``get`` returning ``None`` instead of raising, for chain resolution."""
        try:
            return await self.get(backup_id)
        except NotFoundError:
            return None
