"""Pydantic models for ledger-backup configuration."""

from datetime import timedelta

from pydantic import BaseModel, Field

from ledger_backup.models import BackupType, RetentionPolicy


# ============================================================================
# Configuration Models
# ============================================================================


class StoreProfile(BaseModel):
    """Primary metadata store connection profile from backup.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    table: str = "backup_records"


class RetrySettings(BaseModel):
    """Bounded exponential backoff for storage and ledger calls."""

    attempts: int = 3
    base_delay: float = 2.0     # seconds; doubled each attempt (2s, 4s, 8s)
    max_delay: float = 30.0
    timeout: float = 30.0       # per-attempt timeout


class BackupSettings(BaseModel):
    """Backup engine and read-path settings."""

    max_chain_depth: int = 6            # incrementals per FULL before escalating
    primary_timeout: float = 2.0        # bounded wait on the primary read path
    primary_key: str = "_id"
    collections: list[str] | None = None  # None means every collection the data source has


class RetentionSettings(BaseModel):
    """Retention policy as written in TOML."""

    max_age_days: float | None = None
    max_full: int = 3
    max_incremental: int = 9
    purge_primary: bool = False
    auto_cleanup: bool = False          # run the policy after every successful create

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_age=timedelta(days=self.max_age_days) if self.max_age_days else None,
            max_count_per_type={
                BackupType.FULL: self.max_full,
                BackupType.INCREMENTAL: self.max_incremental,
            },
            purge_primary=self.purge_primary,
        )


class StorageSettings(BaseModel):
    path: str = "./backups/blobs"
    limit_bytes: int = 1073741824       # 1 GB
    warning_percent: float = 80.0
    critical_percent: float = 95.0


class LedgerSettings(BaseModel):
    path: str = "./backups/ledger.jsonl"


class DataSettings(BaseModel):
    path: str = "./data"


class ScheduleSettings(BaseModel):
    """Intervals for the backup scheduler.  Zero disables a job."""

    enabled: bool = False
    full_interval_hours: float = 24.0
    incremental_interval_hours: float = 6.0
    storage_check_interval_hours: float = 1.0
    cleanup_interval_hours: float = 1.0
    poll_seconds: float = 60.0          # how often due jobs are checked
    triggered_by: str = "CRON"


class BackupConfig(BaseModel):
    """Complete configuration from backup.toml."""

    profiles: dict[str, StoreProfile] = Field(default_factory=dict)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    data: DataSettings = Field(default_factory=DataSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
