"""Collaborator protocol definitions.

Defines the Protocols the backup core depends on.  All methods are
``async def`` -- the library is async-first.

- ``StorageAdapter``: content-addressed payload blobs.
- ``LedgerMirror``: append-only, idempotent-by-key backup metadata ledger.
- ``PrimaryMetadataStore``: fast indexed store for backup records.
- ``DataSource``: the live business collections being backed up.

Usage:
    from ledger_backup.adapters.base import StorageAdapter

    async def store(storage: StorageAdapter, payload: bytes) -> str:
        return await storage.put(payload)
"""

from typing import Any, Protocol

from ledger_backup.models import BackupFilter, BackupRecord, BackupStatus, LedgerStats

# Collection name -> list of documents
Dataset = dict[str, list[dict[str, Any]]]


class StorageAdapter(Protocol):
    """Content-addressed blob storage for backup payloads."""

    async def put(self, payload: bytes) -> str:
        """Store ``payload`` and return its content identifier (CID)."""
        ...

    async def get(self, cid: str) -> bytes:
        """Return the payload stored under ``cid``.

        Raises:
            KeyError: If nothing is stored under ``cid``.
        """
        ...

    async def delete(self, cid: str) -> None:
        """Remove the payload stored under ``cid`` (no-op if absent)."""
        ...

    async def usage(self) -> int:
        """Total bytes currently stored."""
        ...


class LedgerMirror(Protocol):
    """Append-only ledger of backup metadata.

    ``submit`` is idempotent by ``backup_id``: resubmitting an identical
    record returns the original ``ledger_tx_id`` and creates no new entry.
    Entries are never removed; status changes are appended.
    """

    async def submit(self, record: BackupRecord) -> str:
        """Record ``record`` and return its ledger transaction id.

        Raises:
            LedgerConflictError: If ``backup_id`` exists with different
                ``cid`` or ``checksum``.
        """
        ...

    async def mark_status(self, backup_id: str, status: BackupStatus) -> str:
        """Append a status change for ``backup_id`` and return its tx id.

        Raises:
            KeyError: If ``backup_id`` was never submitted.
        """
        ...

    async def query_all(self, filter: BackupFilter | None = None) -> list[BackupRecord]:
        """Return the current view of every matching record."""
        ...

    async def query_by_id(self, backup_id: str) -> BackupRecord | None:
        """Return the current view of one record, or ``None``."""
        ...

    async def stats(self) -> LedgerStats:
        """Return aggregate counts over all records."""
        ...


class PrimaryMetadataStore(Protocol):
    """Primary (fast, indexed) store for backup records."""

    async def insert(self, record: BackupRecord) -> None:
        """Insert a new record.

        Raises:
            Exception: If ``backup_id`` already exists or the store is down.
        """
        ...

    async def get(self, backup_id: str) -> BackupRecord | None:
        ...

    async def query(self, filter: BackupFilter | None = None) -> list[BackupRecord]:
        ...

    async def update_status(
        self,
        backup_id: str,
        status: BackupStatus,
        ledger_tx_id: str | None = None,
    ) -> BackupRecord:
        """Set ``status`` (and ``ledger_tx_id`` when given) and return the record.

        Raises:
            KeyError: If ``backup_id`` does not exist.
        """
        ...

    async def purge(self, backup_id: str) -> None:
        """Physically remove the record (retention purge)."""
        ...

    async def ping(self) -> bool:
        """Return ``True`` when the store is reachable."""
        ...


class DataSource(Protocol):
    """Live data being backed up and restored.

    Documents are plain dicts identified by a primary key field.
    """

    async def snapshot(self, collections: list[str] | None = None) -> Dataset:
        """Return a copy of the named collections (all when ``None``)."""
        ...

    async def replace_collections(self, data: Dataset) -> None:
        """Atomically swap each named collection for the given documents."""
        ...

    async def upsert_documents(self, data: Dataset) -> None:
        """Merge documents by primary key; existing collections are kept."""
        ...
