"""ledger-backup: Backups mirrored to an append-only ledger.

Creates FULL and INCREMENTAL backups, keeps their metadata in a primary
store and a tamper-evident ledger, and restores single backups or whole
chains, including ledger-only emergency recovery when the primary store is
down.

Usage:
    from ledger_backup import BackupService, BackupFilter, BackupType
    from ledger_backup import InMemoryStorageAdapter, InMemoryLedgerMirror
    from ledger_backup import build_service, load_backup_config
"""

__version__ = "0.1.0"

# Adapters
from ledger_backup.adapters import (
    DataSource,
    FileLedgerMirror,
    FileStorageAdapter,
    InMemoryDataSource,
    InMemoryLedgerMirror,
    InMemoryMetadataStore,
    InMemoryStorageAdapter,
    JsonDirectoryDataSource,
    LedgerMirror,
    PrimaryMetadataStore,
    StorageAdapter,
)
from ledger_backup.adapters.postgres import AsyncPostgresMetadataStore

# Config
from ledger_backup.config.loader import load_backup_config
from ledger_backup.config.models import BackupConfig, StoreProfile

# Errors
from ledger_backup.errors import (
    BackupError,
    BackupStateError,
    ChainBrokenError,
    ChecksumMismatchError,
    DependentsActiveError,
    ErrorKind,
    LedgerConflictError,
    LedgerUnavailableError,
    LockContentionError,
    NotFoundError,
    PrimaryUnavailableError,
    StorageError,
)

# Models
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreState,
    RetentionPolicy,
    TriggerMethod,
)

# Services
from ledger_backup.factory import ProfileNotFoundError, build_service, resolve_url
from ledger_backup.recovery import select_recovery_target
from ledger_backup.scheduler import BackupScheduler
from ledger_backup.service import BackupService

__all__ = [
    # Adapters
    "DataSource",
    "LedgerMirror",
    "PrimaryMetadataStore",
    "StorageAdapter",
    "AsyncPostgresMetadataStore",
    "FileLedgerMirror",
    "FileStorageAdapter",
    "JsonDirectoryDataSource",
    "InMemoryDataSource",
    "InMemoryLedgerMirror",
    "InMemoryMetadataStore",
    "InMemoryStorageAdapter",
    # Config
    "load_backup_config",
    "BackupConfig",
    "StoreProfile",
    # Errors
    "BackupError",
    "BackupStateError",
    "ChainBrokenError",
    "ChecksumMismatchError",
    "DependentsActiveError",
    "ErrorKind",
    "LedgerConflictError",
    "LedgerUnavailableError",
    "LockContentionError",
    "NotFoundError",
    "PrimaryUnavailableError",
    "StorageError",
    # Models
    "BackupFilter",
    "BackupRecord",
    "BackupStatus",
    "BackupType",
    "RestoreState",
    "RetentionPolicy",
    "TriggerMethod",
    # Services
    "BackupScheduler",
    "BackupService",
    "ProfileNotFoundError",
    "build_service",
    "resolve_url",
    "select_recovery_target",
]
