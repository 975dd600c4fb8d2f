"""TOML configuration loader."""

import os
import tomllib
from pathlib import Path

from ledger_backup.config.models import BackupConfig, StoreProfile

CONFIG_ENV_VAR = "LEDGER_BACKUP_CONFIG"
DEFAULT_CONFIG_FILE = "backup.toml"


def load_backup_config(config_path: Path | str | None = None) -> BackupConfig:
    """Load backup configuration from a TOML file.

    Args:
        config_path: Path to backup.toml.  Defaults to ``$LEDGER_BACKUP_CONFIG``
            or ``./backup.toml``.

    Returns:
        BackupConfig with all profiles and settings sections.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        pydantic.ValidationError: If a section is malformed.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Backup config not found: {config_path}\n"
            f"Create {DEFAULT_CONFIG_FILE} or set {CONFIG_ENV_VAR}."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    profiles = {
        name: StoreProfile(**profile_data)
        for name, profile_data in data.get("profiles", {}).items()
    }

    sections = {
        key: data[key]
        for key in ("backup", "retry", "retention", "storage", "ledger", "data", "schedule")
        if key in data
    }

    return BackupConfig(profiles=profiles, **sections)
