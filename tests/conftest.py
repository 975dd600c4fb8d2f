"""Shared fixtures: in-memory collaborators and a wired BackupService."""

from datetime import datetime, timedelta, timezone

import pytest

from ledger_backup.adapters.memory import (
    InMemoryDataSource,
    InMemoryLedgerMirror,
    InMemoryMetadataStore,
    InMemoryStorageAdapter,
)
from ledger_backup.config.models import BackupConfig, BackupSettings, RetrySettings
from ledger_backup.models import BackupRecord, BackupStatus, BackupType
from ledger_backup.service import BackupService

# No backoff sleeps, short per-attempt timeout
FAST_RETRY = RetrySettings(attempts=3, base_delay=0, max_delay=0, timeout=1.0)
FAST_SETTINGS = BackupSettings(primary_timeout=0.2)


def make_dataset() -> dict[str, list[dict]]:
    """3 collections, 100 documents."""
    return {
        "users": [{"_id": f"u{i}", "name": f"user {i}", "role": "buyer"} for i in range(40)],
        "products": [{"_id": f"p{i}", "title": f"product {i}", "price": i * 10} for i in range(35)],
        "orders": [{"_id": i, "user": f"u{i % 40}", "total": i * 3} for i in range(25)],
    }


def make_record(
    backup_id: str,
    backup_type: BackupType = BackupType.FULL,
    *,
    parent: str | None = None,
    status: BackupStatus = BackupStatus.ACTIVE,
    created_at: datetime | None = None,
    minutes: int = 0,
    **fields,
) -> BackupRecord:
    """Bare record for metadata-only tests."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return BackupRecord(
        backup_id=backup_id,
        type=backup_type,
        status=status,
        created_at=created_at or base + timedelta(minutes=minutes),
        cid=fields.pop("cid", f"sha256-{backup_id.lower()}"),
        checksum=fields.pop("checksum", f"sha256:{backup_id.lower()}"),
        parent_backup_id=parent,
        **fields,
    )


@pytest.fixture
def storage() -> InMemoryStorageAdapter:
    return InMemoryStorageAdapter()


@pytest.fixture
def primary() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def ledger() -> InMemoryLedgerMirror:
    return InMemoryLedgerMirror()


@pytest.fixture
def data() -> InMemoryDataSource:
    return InMemoryDataSource(make_dataset())


@pytest.fixture
def config() -> BackupConfig:
    return BackupConfig(backup=FAST_SETTINGS, retry=FAST_RETRY)


@pytest.fixture
def service(storage, primary, ledger, data, config) -> BackupService:
    return BackupService(storage, primary, ledger, data, config)
