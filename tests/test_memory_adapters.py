"""Tests for the in-memory collaborator implementations."""

import inspect

import pytest

from conftest import make_dataset, make_record
from ledger_backup.adapters.base import DataSource, LedgerMirror, PrimaryMetadataStore, StorageAdapter
from ledger_backup.adapters.memory import (
    InMemoryDataSource,
    InMemoryLedgerMirror,
    InMemoryMetadataStore,
    InMemoryStorageAdapter,
)
from ledger_backup.errors import LedgerConflictError
from ledger_backup.models import BackupFilter, BackupStatus, BackupType


class TestProtocolConformance:
    """In-memory classes implement every Protocol method as a coroutine."""

    @pytest.mark.parametrize(
        "protocol, impl",
        [
            (StorageAdapter, InMemoryStorageAdapter),
            (LedgerMirror, InMemoryLedgerMirror),
            (PrimaryMetadataStore, InMemoryMetadataStore),
            (DataSource, InMemoryDataSource),
        ],
    )
    def test_methods_are_async(self, protocol, impl) -> None:
        names = [n for n, v in vars(protocol).items() if inspect.iscoroutinefunction(v)]
        assert names
        for name in names:
            assert inspect.iscoroutinefunction(getattr(impl, name)), name


class TestInMemoryStorage:
    async def test_put_is_content_addressed(self, storage) -> None:
        cid = await storage.put(b"payload")
        assert cid.startswith("sha256-")
        assert await storage.put(b"payload") == cid
        assert await storage.get(cid) == b"payload"

    async def test_outage(self, storage) -> None:
        storage.available = False
        with pytest.raises(ConnectionError):
            await storage.put(b"x")

    async def test_corrupt_flips_one_byte(self, storage) -> None:
        cid = await storage.put(b"\x00\x00")
        storage.corrupt(cid, offset=1)
        assert await storage.get(cid) == b"\x00\xff"

    async def test_usage_and_delete(self, storage) -> None:
        cid = await storage.put(b"12345")
        assert await storage.usage() == 5
        await storage.delete(cid)
        await storage.delete(cid)
        assert await storage.usage() == 0


class TestInMemoryLedger:
    """Verify submissions are idempotent and history is append-only."""

    async def test_submit_twice_one_entry(self, ledger) -> None:
        record = make_record("FULL_A", status=BackupStatus.LEDGER_PENDING)
        first = await ledger.submit(record)
        second = await ledger.submit(record)
        assert first == second
        assert len(ledger.entries) == 1

    async def test_submitted_record_is_active(self, ledger) -> None:
        tx_id = await ledger.submit(make_record("FULL_A", status=BackupStatus.LEDGER_PENDING))
        stored = await ledger.query_by_id("FULL_A")
        assert stored.status is BackupStatus.ACTIVE
        assert stored.ledger_tx_id == tx_id

    async def test_conflicting_resubmission(self, ledger) -> None:
        await ledger.submit(make_record("FULL_A"))
        with pytest.raises(LedgerConflictError):
            await ledger.submit(make_record("FULL_A", cid="sha256-other"))

    async def test_mark_status_appends(self, ledger) -> None:
        await ledger.submit(make_record("FULL_A"))
        await ledger.mark_status("FULL_A", BackupStatus.DELETED)
        assert [e["op"] for e in ledger.entries] == ["submit", "status"]
        assert (await ledger.query_by_id("FULL_A")).status is BackupStatus.DELETED

    async def test_query_all_filtered_newest_first(self, ledger) -> None:
        await ledger.submit(make_record("FULL_A", minutes=0))
        await ledger.submit(make_record("FULL_B", minutes=5))
        await ledger.submit(make_record("INC_A", BackupType.INCREMENTAL, parent="FULL_B", minutes=6))
        fulls = await ledger.query_all(BackupFilter(type=BackupType.FULL))
        assert [r.backup_id for r in fulls] == ["FULL_B", "FULL_A"]

    async def test_dropped_submission_records_nothing(self, ledger) -> None:
        ledger.drop_submissions = True
        assert await ledger.submit(make_record("FULL_A"))
        assert await ledger.query_by_id("FULL_A") is None

    async def test_stats(self, ledger) -> None:
        await ledger.submit(make_record("FULL_A"))
        stats = await ledger.stats()
        assert stats.total == 1
        assert stats.active_full_backups == 1


class TestInMemoryMetadataStore:
    async def test_insert_duplicate(self, primary) -> None:
        await primary.insert(make_record("FULL_A"))
        with pytest.raises(ValueError):
            await primary.insert(make_record("FULL_A"))

    async def test_update_status_sets_tx_id(self, primary) -> None:
        await primary.insert(make_record("FULL_A", status=BackupStatus.LEDGER_PENDING))
        updated = await primary.update_status("FULL_A", BackupStatus.ACTIVE, "tx-1")
        assert updated.status is BackupStatus.ACTIVE
        assert updated.ledger_tx_id == "tx-1"

    async def test_update_missing(self, primary) -> None:
        with pytest.raises(KeyError):
            await primary.update_status("FULL_X", BackupStatus.DELETED)

    async def test_ping_reflects_outage(self, primary) -> None:
        assert await primary.ping() is True
        primary.available = False
        assert await primary.ping() is False

    async def test_returned_records_are_copies(self, primary) -> None:
        await primary.insert(make_record("FULL_A"))
        record = await primary.get("FULL_A")
        record.status = BackupStatus.DELETED
        assert (await primary.get("FULL_A")).status is BackupStatus.ACTIVE


class TestInMemoryDataSource:
    async def test_snapshot_is_deep_copy(self, data) -> None:
        snap = await data.snapshot()
        snap["users"][0]["name"] = "changed"
        assert data.collections["users"][0]["name"] == "user 0"

    async def test_snapshot_named_missing_collection(self, data) -> None:
        assert await data.snapshot(["missing"]) == {"missing": []}

    async def test_replace_only_named(self, data) -> None:
        await data.replace_collections({"users": [{"_id": "x"}]})
        assert data.collections["users"] == [{"_id": "x"}]
        assert len(data.collections["products"]) == 35

    async def test_fail_next_replace_leaves_data(self, data) -> None:
        data.fail_next_replace = True
        with pytest.raises(ConnectionError):
            await data.replace_collections({"users": []})
        assert len(data.collections["users"]) == 40

    async def test_upsert_merges_by_key(self) -> None:
        source = InMemoryDataSource(make_dataset())
        await source.upsert_documents({"users": [{"_id": "u0", "name": "new"}, {"_id": "u100"}]})
        users = {d["_id"]: d for d in source.collections["users"]}
        assert len(users) == 41
        assert users["u0"] == {"_id": "u0", "name": "new"}
