"""Collaborator protocols and adapter implementations.

Provides the ``StorageAdapter``, ``LedgerMirror``, ``PrimaryMetadataStore``
and ``DataSource`` Protocols plus in-memory, filesystem, and PostgreSQL
implementations.

Usage:
    from ledger_backup.adapters import InMemoryLedgerMirror, FileStorageAdapter
    from ledger_backup.adapters.postgres import AsyncPostgresMetadataStore
"""

from ledger_backup.adapters.base import (
    DataSource,
    Dataset,
    LedgerMirror,
    PrimaryMetadataStore,
    StorageAdapter,
)
from ledger_backup.adapters.filesystem import (
    FileLedgerMirror,
    FileStorageAdapter,
    JsonDirectoryDataSource,
)
from ledger_backup.adapters.memory import (
    InMemoryDataSource,
    InMemoryLedgerMirror,
    InMemoryMetadataStore,
    InMemoryStorageAdapter,
)

__all__ = [
    "DataSource",
    "Dataset",
    "LedgerMirror",
    "PrimaryMetadataStore",
    "StorageAdapter",
    "FileLedgerMirror",
    "FileStorageAdapter",
    "JsonDirectoryDataSource",
    "InMemoryDataSource",
    "InMemoryLedgerMirror",
    "InMemoryMetadataStore",
    "InMemoryStorageAdapter",
]
