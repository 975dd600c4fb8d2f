"""Tests for file-backed storage, ledger, and data source."""

import asyncio
import json

import pytest

from conftest import make_dataset, make_record
from ledger_backup.adapters.filesystem import (
    GENESIS_HASH,
    FileLedgerMirror,
    FileStorageAdapter,
    JsonDirectoryDataSource,
)
from ledger_backup.errors import LedgerConflictError
from ledger_backup.models import BackupFilter, BackupStatus, BackupType


class TestFileStorageAdapter:
    async def test_put_get_roundtrip(self, tmp_path) -> None:
        storage = FileStorageAdapter(tmp_path / "blobs")
        cid = await storage.put(b"payload")
        assert await storage.get(cid) == b"payload"
        digest = cid[len("sha256-"):]
        assert (tmp_path / "blobs" / digest[:2] / cid).exists()

    async def test_missing_cid(self, tmp_path) -> None:
        storage = FileStorageAdapter(tmp_path)
        with pytest.raises(KeyError):
            await storage.get("sha256-" + "0" * 64)

    async def test_rejects_path_traversal(self, tmp_path) -> None:
        storage = FileStorageAdapter(tmp_path)
        with pytest.raises(KeyError):
            await storage.get("sha256-../../etc/passwd")

    async def test_delete_and_usage(self, tmp_path) -> None:
        storage = FileStorageAdapter(tmp_path)
        cid = await storage.put(b"12345")
        assert await storage.usage() == 5
        await storage.delete(cid)
        assert await storage.usage() == 0


class TestFileLedgerMirror:
    """Verify the JSON-lines ledger is hash-chained and idempotent."""

    async def test_submit_idempotent(self, tmp_path) -> None:
        ledger = FileLedgerMirror(tmp_path / "ledger.jsonl")
        record = make_record("FULL_A", status=BackupStatus.LEDGER_PENDING)
        first = await ledger.submit(record)
        second = await ledger.submit(record)
        assert first == second
        assert len((tmp_path / "ledger.jsonl").read_text().splitlines()) == 1

    async def test_tx_id_is_entry_hash(self, tmp_path) -> None:
        path = tmp_path / "ledger.jsonl"
        ledger = FileLedgerMirror(path)
        tx_id = await ledger.submit(make_record("FULL_A"))
        entry = json.loads(path.read_text().splitlines()[0])
        assert entry["hash"] == tx_id
        assert entry["prev"] == GENESIS_HASH
        assert (await ledger.query_by_id("FULL_A")).ledger_tx_id == tx_id

    async def test_conflict(self, tmp_path) -> None:
        ledger = FileLedgerMirror(tmp_path / "ledger.jsonl")
        await ledger.submit(make_record("FULL_A"))
        with pytest.raises(LedgerConflictError):
            await ledger.submit(make_record("FULL_A", checksum="sha256:different"))

    async def test_status_changes_fold(self, tmp_path) -> None:
        ledger = FileLedgerMirror(tmp_path / "ledger.jsonl")
        await ledger.submit(make_record("FULL_A"))
        await ledger.submit(make_record("INC_A", BackupType.INCREMENTAL, parent="FULL_A", minutes=1))
        await ledger.mark_status("INC_A", BackupStatus.DELETED)

        active = await ledger.query_all(BackupFilter(status=BackupStatus.ACTIVE))
        assert [r.backup_id for r in active] == ["FULL_A"]
        stats = await ledger.stats()
        assert stats.total == 2
        assert stats.deleted == 1

    async def test_mark_status_unknown(self, tmp_path) -> None:
        ledger = FileLedgerMirror(tmp_path / "ledger.jsonl")
        with pytest.raises(KeyError):
            await ledger.mark_status("FULL_X", BackupStatus.DELETED)

    async def test_persists_across_instances(self, tmp_path) -> None:
        path = tmp_path / "ledger.jsonl"
        await FileLedgerMirror(path).submit(make_record("FULL_A"))
        assert await FileLedgerMirror(path).query_by_id("FULL_A") is not None

    async def test_verify_log_detects_tampering(self, tmp_path) -> None:
        path = tmp_path / "ledger.jsonl"
        ledger = FileLedgerMirror(path)
        await ledger.submit(make_record("FULL_A"))
        await ledger.submit(make_record("FULL_B", minutes=1))
        await ledger.mark_status("FULL_A", BackupStatus.DELETED)
        assert ledger.verify_log() == []

        lines = path.read_text().splitlines()
        entry = json.loads(lines[1])
        entry["record"]["cid"] = "sha256-forged"
        lines[1] = json.dumps(entry, sort_keys=True)
        path.write_text("\n".join(lines) + "\n")

        assert ledger.verify_log() == [2]


class TestJsonDirectoryDataSource:
    async def test_replace_and_snapshot(self, tmp_path) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        await source.replace_collections(make_dataset())
        snap = await source.snapshot()
        assert sorted(snap) == ["orders", "products", "users"]
        assert len(snap["users"]) == 40

    async def test_named_snapshot_of_missing_collection(self, tmp_path) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        assert await source.snapshot(["users"]) == {"users": []}

    async def test_upsert(self, tmp_path) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        await source.replace_collections({"users": [{"_id": "u1", "name": "a"}]})
        await source.upsert_documents({"users": [{"_id": "u1", "name": "b"}, {"_id": "u2"}]})
        users = {d["_id"]: d for d in (await source.snapshot(["users"]))["users"]}
        assert users == {"u1": {"_id": "u1", "name": "b"}, "u2": {"_id": "u2"}}

    async def test_failed_write_keeps_previous_collections(self, tmp_path, monkeypatch) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        before = make_dataset()
        await source.replace_collections(before)

        written = []

        def fail_second(path, docs):
            written.append(path.name)
            if len(written) == 2:
                raise OSError("disk full")
            JsonDirectoryDataSource._write_collection(path, docs)

        monkeypatch.setattr(source, "_write_collection", fail_second)
        with pytest.raises(OSError):
            await source.replace_collections(
                {"users": [], "products": [], "orders": []}
            )

        assert await source.snapshot() == before
        assert len(list((tmp_path / "generations").iterdir())) == 1

    async def test_current_points_at_new_generation(self, tmp_path) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        await source.replace_collections({"users": [{"_id": "u1"}]})
        first = (tmp_path / "CURRENT").read_text()
        await source.replace_collections({"orders": [{"_id": "o1"}]})
        second = (tmp_path / "CURRENT").read_text()

        assert second != first
        assert [p.name for p in (tmp_path / "generations").iterdir()] == [second]
        assert await source.snapshot() == {
            "orders": [{"_id": "o1"}],
            "users": [{"_id": "u1"}],
        }

    async def test_leftover_generation_is_ignored_then_pruned(self, tmp_path) -> None:
        source = JsonDirectoryDataSource(tmp_path)
        await source.replace_collections({"users": [{"_id": "u1"}]})
        stray = tmp_path / "generations" / "gen-99999999"
        stray.mkdir()
        (stray / "users.json").write_text("[]")

        assert await source.snapshot() == {"users": [{"_id": "u1"}]}

        await source.upsert_documents({"users": [{"_id": "u2"}]})
        assert not stray.exists()
        users = (await source.snapshot(["users"]))["users"]
        assert sorted(d["_id"] for d in users) == ["u1", "u2"]

    async def test_reads_plain_directory(self, tmp_path) -> None:
        (tmp_path / "users.json").write_text(json.dumps([{"_id": "u1"}]))
        source = JsonDirectoryDataSource(tmp_path)
        assert await source.snapshot() == {"users": [{"_id": "u1"}]}


class TestBlockingIO:
    """File access runs in worker threads instead of on the event loop."""

    @pytest.fixture
    def thread_calls(self, monkeypatch):
        calls = []
        real = asyncio.to_thread

        async def recording(func, /, *args, **kwargs):
            calls.append(getattr(func, "__name__", repr(func)))
            return await real(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording)
        return calls

    async def test_storage(self, tmp_path, thread_calls) -> None:
        storage = FileStorageAdapter(tmp_path)
        cid = await storage.put(b"12345")
        await storage.get(cid)
        await storage.usage()
        await storage.delete(cid)
        assert thread_calls == ["_store", "_load", "_usage", "unlink"]

    async def test_ledger(self, tmp_path, thread_calls) -> None:
        ledger = FileLedgerMirror(tmp_path / "ledger.jsonl")
        await ledger.submit(make_record("FULL_A"))
        await ledger.mark_status("FULL_A", BackupStatus.DELETED)
        await ledger.query_all()
        await ledger.query_by_id("FULL_A")
        await ledger.stats()
        assert thread_calls == ["_submit", "_mark_status", "_records", "_records", "_records"]
