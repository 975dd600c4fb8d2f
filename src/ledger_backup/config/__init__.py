"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from ledger_backup.config import load_backup_config, BackupConfig
"""

from ledger_backup.config.loader import load_backup_config
from ledger_backup.config.models import (
    BackupConfig,
    BackupSettings,
    RetentionSettings,
    RetrySettings,
    ScheduleSettings,
    StoreProfile,
)

__all__ = [
    "load_backup_config",
    "BackupConfig",
    "BackupSettings",
    "RetentionSettings",
    "RetrySettings",
    "ScheduleSettings",
    "StoreProfile",
]
