"""Service factory.

Builds a ``BackupService`` from ``backup.toml``: the active profile selects
the PostgreSQL primary store, the ``[storage]``, ``[ledger]`` and ``[data]``
sections select the on-disk payload store, ledger log, and data directory.
"""

import os
from urllib.parse import quote

from ledger_backup.adapters.filesystem import (
    FileLedgerMirror,
    FileStorageAdapter,
    JsonDirectoryDataSource,
)
from ledger_backup.adapters.postgres import AsyncPostgresMetadataStore
from ledger_backup.config import load_backup_config
from ledger_backup.config.models import BackupConfig, StoreProfile
from ledger_backup.service import BackupService

PROFILE_ENV_VAR = "LEDGER_BACKUP_PROFILE"


class ProfileNotFoundError(Exception):
    """Raised when no primary store profile is configured."""

    pass


def get_active_profile_name(config: BackupConfig) -> str:
    """Get active profile name.

    Priority:
    1. LEDGER_BACKUP_PROFILE env var
    2. The only profile in backup.toml
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile can be chosen
    """
    env_profile = os.environ.get(PROFILE_ENV_VAR)
    if env_profile:
        return env_profile

    if len(config.profiles) == 1:
        return next(iter(config.profiles))

    raise ProfileNotFoundError(
        "No primary store profile selected.\n"
        f"Set {PROFILE_ENV_VAR}=<name> or pass --profile.\n"
        f"Available profiles: {', '.join(config.profiles) or '(none)'}"
    )


def resolve_url(profile: StoreProfile) -> str:
    """Resolve profile URL with ``[YOUR-PASSWORD]`` substitution."""
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


def build_primary_store(
    config: BackupConfig, profile_name: str | None = None
) -> AsyncPostgresMetadataStore:
    """Create the primary metadata store for a profile.

    Raises:
        ProfileNotFoundError: If no profile is selected.
        KeyError: If the profile is not in backup.toml.
    """
    profile_name = profile_name or get_active_profile_name(config)
    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in backup.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )
    profile = config.profiles[profile_name]
    return AsyncPostgresMetadataStore(resolve_url(profile), table=profile.table)


def build_service(
    config: BackupConfig | None = None, profile_name: str | None = None
) -> BackupService:
    """Build a service from configuration (loads backup.toml when omitted)."""
    config = config or load_backup_config()
    return BackupService(
        storage=FileStorageAdapter(config.storage.path),
        primary=build_primary_store(config, profile_name),
        ledger=FileLedgerMirror(config.ledger.path),
        data=JsonDirectoryDataSource(config.data.path, config.backup.primary_key),
        config=config,
    )
