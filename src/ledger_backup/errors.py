"""Error taxonomy for backup, restore, and recovery operations.

Every failure surfaced by the engines is a ``BackupError`` subclass tagged
with an ``ErrorKind``.  Errors carry the backup id, the step that failed,
and the underlying cause so callers can render diagnostics without
parsing messages.

Usage:
    from ledger_backup.errors import BackupError, ErrorKind

    try:
        await service.restore_full("FULL_20260101T000000000000Z")
    except BackupError as e:
        if e.kind is ErrorKind.CHECKSUM_MISMATCH:
            ...
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag identifying the failure mode of a ``BackupError``."""

    NOT_FOUND = "NOT_FOUND"
    CHAIN_BROKEN = "CHAIN_BROKEN"
    LOCK_CONTENTION = "LOCK_CONTENTION"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    STORAGE = "STORAGE"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    DEPENDENTS_ACTIVE = "DEPENDENTS_ACTIVE"
    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"  # returned as data, never raised
    INVALID_STATE = "INVALID_STATE"
    PRIMARY_UNAVAILABLE = "PRIMARY_UNAVAILABLE"
    LEDGER_CONFLICT = "LEDGER_CONFLICT"


class BackupError(Exception):
    """Base class for all backup-core failures."""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(
        self,
        message: str,
        *,
        backup_id: str | None = None,
        step: str | None = None,
        cause: BaseException | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backup_id = backup_id
        self.step = step
        self.cause = cause
        self.context = context
        # Partial restore report, attached by the restore engine on failure
        self.report: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Structured form for logs and CLI output."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "backup_id": self.backup_id,
            "step": self.step,
            "cause": repr(self.cause) if self.cause is not None else None,
            "context": self.context,
        }


class NotFoundError(BackupError):
    """Backup absent from both the primary store and the ledger."""

    kind = ErrorKind.NOT_FOUND


class ChainBrokenError(BackupError):
    """Incremental parent missing, inactive, cyclic, or out of order."""

    kind = ErrorKind.CHAIN_BROKEN


class LockContentionError(BackupError):
    """A backup or restore is already running."""

    kind = ErrorKind.LOCK_CONTENTION


class LedgerUnavailableError(BackupError):
    """Ledger calls exhausted their retry budget."""

    kind = ErrorKind.LEDGER_UNAVAILABLE


class StorageError(BackupError):
    """Payload put/get/delete failed."""

    kind = ErrorKind.STORAGE


class ChecksumMismatchError(BackupError):
    """Payload or restored data does not match the recorded checksum."""

    kind = ErrorKind.CHECKSUM_MISMATCH


class DependentsActiveError(BackupError):
    """Deletion blocked by live backups that depend on this one."""

    kind = ErrorKind.DEPENDENTS_ACTIVE


class BackupStateError(BackupError):
    """Backup exists but is in the wrong state or of the wrong type."""

    kind = ErrorKind.INVALID_STATE


class PrimaryUnavailableError(BackupError):
    """Primary metadata store rejected or timed out a write."""

    kind = ErrorKind.PRIMARY_UNAVAILABLE


class LedgerConflictError(BackupError):
    """Resubmission would change the immutable fields of a ledger entry."""

    kind = ErrorKind.LEDGER_CONFLICT


# Exceptions treated as transient by the retry helpers.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)
