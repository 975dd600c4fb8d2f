"""Pydantic models for backup records, filters, and operation results.

``BackupRecord`` is the one record shape shared by the primary store and
the ledger.  Anything read from either store is validated into it before
use, so dynamically-shaped payloads never leak into the engines.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


# ============================================================================
# Enums
# ============================================================================


class BackupType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class BackupStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"
    FAILED = "FAILED"
    LEDGER_PENDING = "LEDGER_PENDING"


class TriggerMethod(str, Enum):
    MANUAL = "MANUAL"
    CRON = "CRON"
    API = "API"


class RestoreState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    STAGING = "STAGING"
    APPLYING = "APPLYING"
    VERIFYING = "VERIFYING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Statuses that still anchor a chain (a parent with such a child is in use)
LIVE_STATUSES = frozenset({BackupStatus.ACTIVE, BackupStatus.LEDGER_PENDING})


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Backup Record
# ============================================================================


class CollectionChange(BaseModel):
    """Per-collection change counts for an incremental backup."""

    upserted: int = 0
    deleted: int = 0


class BackupRecord(BaseModel):
    """Backup metadata mirrored in the primary store and the ledger."""

    backup_id: str
    type: BackupType
    status: BackupStatus = BackupStatus.LEDGER_PENDING
    created_at: datetime
    triggered_by: str = "SYSTEM"
    trigger_method: TriggerMethod = TriggerMethod.MANUAL
    cid: str
    checksum: str                                   # sha256 of the restored dataset state
    size_bytes: int = 0                             # compressed payload size
    uncompressed_size: int = 0
    parent_backup_id: str | None = None             # None for FULL, required for INCREMENTAL
    ledger_tx_id: str | None = None                 # set once mirrored
    collections: dict[str, int] = Field(default_factory=dict)  # doc counts at this state
    document_count: int = 0
    changes: dict[str, CollectionChange] | None = None

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_parent(self) -> "BackupRecord":
        if self.type is BackupType.FULL and self.parent_backup_id is not None:
            raise ValueError("FULL backup cannot have a parent_backup_id")
        if self.type is BackupType.INCREMENTAL and not self.parent_backup_id:
            raise ValueError("INCREMENTAL backup requires parent_backup_id")
        return self

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def identity(self) -> tuple[str, str, str]:
        """Fields that are immutable once mirrored to the ledger."""
        return (self.backup_id, self.cid, self.checksum)


class BackupFilter(BaseModel):
    """Query filter accepted by both stores."""

    type: BackupType | None = None
    status: list[BackupStatus] | None = None
    parent_backup_id: str | None = None
    triggered_by: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _wrap_status(cls, value: Any) -> Any:
        if value is None or isinstance(value, (list, tuple, set, frozenset)):
            return list(value) if value is not None else None
        return [value]

    def matches(self, record: BackupRecord) -> bool:
        if self.type is not None and record.type is not self.type:
            return False
        if self.status is not None and record.status not in self.status:
            return False
        if self.parent_backup_id is not None and record.parent_backup_id != self.parent_backup_id:
            return False
        if self.triggered_by is not None and record.triggered_by != self.triggered_by:
            return False
        if self.since is not None and record.created_at < _as_utc(self.since):
            return False
        if self.until is not None and record.created_at > _as_utc(self.until):
            return False
        return True


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def newest_first(records: list[BackupRecord]) -> list[BackupRecord]:
    """Sort records newest first, ties broken by backup id (deterministic)."""
    return sorted(records, key=lambda r: (r.created_at, r.backup_id), reverse=True)


# ============================================================================
# Operation Results
# ============================================================================


class CleanupResult(BaseModel):
    """Result of a retention pass."""

    deleted_ids: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)   # candidates blocked by dependents
    errors: dict[str, str] = Field(default_factory=dict)


class CreateResult(BaseModel):
    """Result of a create call.

    ``chain_reset`` is set on escalation to FULL.  ``cleanup`` holds the
    retention pass run after the create when automatic cleanup is on.
    """

    record: BackupRecord
    chain_reset: bool = False
    cleanup: CleanupResult | None = None


class ListResult(BaseModel):
    """Records from exactly one source."""

    source: Literal["primary", "ledger", "unavailable"]
    records: list[BackupRecord] = Field(default_factory=list)
    error: str | None = None


class VerificationResult(BaseModel):
    """Outcome of reconciling one backup across both stores."""

    backup_id: str
    match: bool
    primary_record: BackupRecord | None = None
    ledger_record: BackupRecord | None = None
    mismatched_fields: list[str] = Field(default_factory=list)
    kind: str | None = None                         # RECONCILIATION_MISMATCH when match is False
    primary_error: str | None = None
    ledger_error: str | None = None


class RestoreStep(BaseModel):
    """Outcome of applying one backup (one chain link)."""

    backup_id: str
    type: BackupType
    outcome: Literal["APPLIED", "FAILED", "SKIPPED", "CANCELLED"]
    collections: int = 0
    documents: int = 0
    error: str | None = None


class RestoreReport(BaseModel):
    """Result of ``restore_full`` or ``restore_from_chain``."""

    target_backup_id: str
    mode: Literal["destructive", "safe", "chain"]
    state: RestoreState
    chain: list[str] = Field(default_factory=list)
    steps: list[RestoreStep] = Field(default_factory=list)
    collections_restored: int = 0
    documents_restored: int = 0
    last_applied_backup_id: str | None = None
    rolled_back: bool = False
    error: dict[str, Any] | None = None
    duration_seconds: float = 0.0


class RecoveryReport(BaseModel):
    """Result of an emergency recovery run."""

    backup_id: str | None = None                    # FULL backup chosen
    target_backup_id: str | None = None             # tip of the chosen chain
    chain_length: int = 0
    chain: list[str] = Field(default_factory=list)
    steps: list[RestoreStep] = Field(default_factory=list)
    state: RestoreState = RestoreState.IDLE
    already_applied: bool = False
    ledger_records: int = 0
    error: dict[str, Any] | None = None


class RetentionPolicy(BaseModel):
    """How long and how many backups are kept.

    ``max_count_per_type`` is either one limit for every type or a mapping
    per type.  Defaults keep 3 FULL and 9 INCREMENTAL backups.
    """

    max_age: timedelta | None = None
    max_count_per_type: int | dict[BackupType, int] | None = Field(
        default_factory=lambda: {BackupType.FULL: 3, BackupType.INCREMENTAL: 9}
    )
    purge_primary: bool = False

    def limit_for(self, backup_type: BackupType) -> int | None:
        if self.max_count_per_type is None:
            return None
        if isinstance(self.max_count_per_type, int):
            return self.max_count_per_type
        return self.max_count_per_type.get(backup_type)


# ============================================================================
# Statistics
# ============================================================================


class LedgerStats(BaseModel):
    """Aggregate counts reported by the ledger."""

    available: bool = True
    total: int = 0
    active: int = 0
    deleted: int = 0
    full_backups: int = 0
    incremental_backups: int = 0
    active_full_backups: int = 0
    active_incremental_backups: int = 0
    oldest_backup: datetime | None = None
    newest_backup: datetime | None = None
    error: str | None = None

    @classmethod
    def from_records(cls, records: list[BackupRecord]) -> "LedgerStats":
        def count(**kw: Any) -> int:
            return sum(
                1 for r in records
                if all(getattr(r, k) == v for k, v in kw.items())
            )

        timestamps = [r.created_at for r in records]
        return cls(
            total=len(records),
            active=count(status=BackupStatus.ACTIVE),
            deleted=count(status=BackupStatus.DELETED),
            full_backups=count(type=BackupType.FULL),
            incremental_backups=count(type=BackupType.INCREMENTAL),
            active_full_backups=count(type=BackupType.FULL, status=BackupStatus.ACTIVE),
            active_incremental_backups=count(
                type=BackupType.INCREMENTAL, status=BackupStatus.ACTIVE
            ),
            oldest_backup=min(timestamps) if timestamps else None,
            newest_backup=max(timestamps) if timestamps else None,
        )


class StorageStats(BaseModel):
    """Storage usage for active backups."""

    source: str
    total_backups: int = 0
    full_backups: int = 0
    incremental_backups: int = 0
    used_bytes: int = 0
    limit_bytes: int = 0
    usage_percentage: float = 0.0
    alert_level: Literal["OK", "WARNING", "CRITICAL"] = "OK"
    oldest_backup: datetime | None = None
    newest_backup: datetime | None = None


class SchedulerStatus(BaseModel):
    """Counters and last results of the backup scheduler."""

    running: bool = False
    started_at: datetime | None = None
    backups_completed: int = 0
    backups_failed: int = 0
    last_full_backup_id: str | None = None
    last_incremental_backup_id: str | None = None
    last_run: dict[str, datetime] = Field(default_factory=dict)   # job name -> start time
    last_error: dict[str, Any] | None = None
    storage: StorageStats | None = None
    last_cleanup: CleanupResult | None = None
