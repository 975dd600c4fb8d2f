"""File-backed storage, ledger, and data source.

- ``FileStorageAdapter``: content-addressed blobs under a directory,
  ``cid = "sha256-<hex>"`` of the payload bytes.
- ``FileLedgerMirror``: append-only JSON-lines log.  Every entry embeds
  the hash of the previous entry, so edits to history are detectable with
  ``verify_log()``.  The entry hash is the ledger transaction id.
- ``JsonDirectoryDataSource``: one ``<collection>.json`` file per
  collection inside a generation directory.  A swap stages a whole new
  generation, then repoints ``CURRENT`` with a single ``os.replace``.

Blocking file I/O runs in ``asyncio.to_thread``.

Usage:
    storage = FileStorageAdapter("./backups/blobs")
    ledger = FileLedgerMirror("./backups/ledger.jsonl")
    data = JsonDirectoryDataSource("./data")
"""

import asyncio
import hashlib
import json
import os
import shutil
from pathlib import Path
from typing import Any

from ledger_backup.adapters.base import Dataset
from ledger_backup.errors import LedgerConflictError
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    LedgerStats,
    newest_first,
    utcnow,
)

GENESIS_HASH = "0" * 64
CURRENT_FILE = "CURRENT"


def _atomic_write(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


# ============================================================================
# Storage
# ============================================================================


class FileStorageAdapter:
    """Content-addressed payload storage on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, cid: str) -> Path:
        if not cid.startswith("sha256-") or "/" in cid or ".." in cid:
            raise KeyError(cid)
        digest = cid[len("sha256-"):]
        return self.root / digest[:2] / cid

    @staticmethod
    def _store(path: Path, payload: bytes) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(path, payload)

    @staticmethod
    def _load(path: Path, cid: str) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise KeyError(cid) from None

    def _usage(self) -> int:
        return sum(p.stat().st_size for p in self.root.rglob("sha256-*") if p.is_file())

    async def put(self, payload: bytes) -> str:
        cid = "sha256-" + hashlib.sha256(payload).hexdigest()
        await asyncio.to_thread(self._store, self._path(cid), payload)
        return cid

    async def get(self, cid: str) -> bytes:
        return await asyncio.to_thread(self._load, self._path(cid), cid)

    async def delete(self, cid: str) -> None:
        await asyncio.to_thread(self._path(cid).unlink, missing_ok=True)

    async def usage(self) -> int:
        return await asyncio.to_thread(self._usage)


# ============================================================================
# Ledger
# ============================================================================


class FileLedgerMirror:
    """Hash-chained, append-only ledger stored as JSON lines."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    # -- log primitives -------------------------------------------------

    def _read_entries(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return [json.loads(line) for line in f if line.strip()]

    @staticmethod
    def _entry_hash(entry: dict[str, Any]) -> str:
        body = {k: v for k, v in entry.items() if k != "hash"}
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode()
        return hashlib.sha256(encoded).hexdigest()

    def _append(self, entries: list[dict[str, Any]], body: dict[str, Any]) -> str:
        entry = {**body, "prev": entries[-1]["hash"] if entries else GENESIS_HASH}
        entry["hash"] = self._entry_hash(entry)
        with open(self.path, "a") as f:
            f.write(json.dumps(entry, sort_keys=True) + "\n")
            f.flush()
            os.fsync(f.fileno())
        return entry["hash"]

    @staticmethod
    def _fold(entries: list[dict[str, Any]]) -> dict[str, BackupRecord]:
        records: dict[str, BackupRecord] = {}
        for entry in entries:
            if entry["op"] == "submit":
                record = BackupRecord.model_validate(entry["record"])
                records[record.backup_id] = record.model_copy(
                    update={"ledger_tx_id": entry["hash"]}
                )
            elif entry["op"] == "status" and entry["backup_id"] in records:
                records[entry["backup_id"]] = records[entry["backup_id"]].model_copy(
                    update={"status": BackupStatus(entry["status"])}
                )
        return records

    def verify_log(self) -> list[int]:
        """Return line numbers (1-based) whose hash chain does not verify."""
        broken: list[int] = []
        prev = GENESIS_HASH
        for line_no, entry in enumerate(self._read_entries(), 1):
            if entry.get("prev") != prev or entry.get("hash") != self._entry_hash(entry):
                broken.append(line_no)
            prev = entry.get("hash", "")
        return broken

    def _records(self) -> dict[str, BackupRecord]:
        return self._fold(self._read_entries())

    def _submit(self, record: BackupRecord) -> str:
        entries = self._read_entries()
        existing = self._fold(entries).get(record.backup_id)
        if existing is not None:
            if existing.identity() != record.identity():
                raise LedgerConflictError(
                    f"Ledger entry {record.backup_id} is immutable",
                    backup_id=record.backup_id,
                    step="ledger_submit",
                )
            return existing.ledger_tx_id
        mirrored = record.model_copy(
            update={"status": BackupStatus.ACTIVE, "ledger_tx_id": None}
        )
        return self._append(
            entries,
            {
                "op": "submit",
                "at": utcnow().isoformat(),
                "record": mirrored.model_dump(mode="json"),
            },
        )

    def _mark_status(self, backup_id: str, status: BackupStatus) -> str:
        entries = self._read_entries()
        if backup_id not in self._fold(entries):
            raise KeyError(backup_id)
        return self._append(
            entries,
            {
                "op": "status",
                "at": utcnow().isoformat(),
                "backup_id": backup_id,
                "status": status.value,
            },
        )

    # -- LedgerMirror ---------------------------------------------------

    async def submit(self, record: BackupRecord) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._submit, record)

    async def mark_status(self, backup_id: str, status: BackupStatus) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._mark_status, backup_id, status)

    async def query_all(self, filter: BackupFilter | None = None) -> list[BackupRecord]:
        records = list((await asyncio.to_thread(self._records)).values())
        if filter is not None:
            records = [r for r in records if filter.matches(r)]
        return newest_first(records)

    async def query_by_id(self, backup_id: str) -> BackupRecord | None:
        return (await asyncio.to_thread(self._records)).get(backup_id)

    async def stats(self) -> LedgerStats:
        return LedgerStats.from_records(list((await asyncio.to_thread(self._records)).values()))


# ============================================================================
# Data Source
# ============================================================================


class JsonDirectoryDataSource:
    """Live collections stored as ``<name>.json`` files.

    Every write builds a complete new generation directory under
    ``generations/`` and then repoints ``CURRENT`` at it with one
    ``os.replace``, so a multi-collection swap is all-or-nothing even across
    a crash.  Without a ``CURRENT`` file the collections are read from the
    root directory itself.
    """

    def __init__(self, root: str | Path, primary_key: str = "_id") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.generations = self.root / "generations"
        self.primary_key = primary_key
        self._lock = asyncio.Lock()

    # -- generations ----------------------------------------------------

    def _current_dir(self) -> Path:
        pointer = self.root / CURRENT_FILE
        if not pointer.exists():
            return self.root
        return self.generations / pointer.read_text().strip()

    def _new_generation(self) -> Path:
        self.generations.mkdir(exist_ok=True)
        numbers = [
            int(p.name[len("gen-"):])
            for p in self.generations.iterdir()
            if p.name.startswith("gen-") and p.name[len("gen-"):].isdigit()
        ]
        path = self.generations / f"gen-{max(numbers, default=0) + 1:08d}"
        path.mkdir()
        return path

    @staticmethod
    def _write_collection(path: Path, docs: list[dict[str, Any]]) -> None:
        with open(path, "w") as f:
            json.dump(docs, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())

    def _commit(self, data: Dataset) -> None:
        current = self._current_dir()
        staged = self._new_generation()
        try:
            for path in current.glob("*.json"):
                if path.stem not in data:
                    shutil.copy2(path, staged / path.name)
            for name, docs in data.items():
                self._write_collection(staged / f"{name}.json", docs)
        except Exception:
            shutil.rmtree(staged, ignore_errors=True)
            raise
        _atomic_write(self.root / CURRENT_FILE, staged.name.encode())

        # Drop superseded and half-written generations
        for path in self.generations.iterdir():
            if path != staged and path.is_dir():
                shutil.rmtree(path, ignore_errors=True)

    def _load(self, name: str, directory: Path | None = None) -> list[dict[str, Any]]:
        path = (directory or self._current_dir()) / f"{name}.json"
        if not path.exists():
            return []
        with open(path, "r") as f:
            return json.load(f)

    def _read(self, collections: list[str] | None) -> Dataset:
        directory = self._current_dir()
        names = (
            sorted(p.stem for p in directory.glob("*.json"))
            if collections is None
            else collections
        )
        return {name: self._load(name, directory) for name in names}

    def _merge(self, data: Dataset) -> None:
        pk = self.primary_key
        merged: Dataset = {}
        for name, docs in data.items():
            existing = {d[pk]: d for d in self._load(name)}
            for doc in docs:
                existing[doc[pk]] = doc
            merged[name] = list(existing.values())
        self._commit(merged)

    # -- DataSource -----------------------------------------------------

    async def snapshot(self, collections: list[str] | None = None) -> Dataset:
        async with self._lock:
            return await asyncio.to_thread(self._read, collections)

    async def replace_collections(self, data: Dataset) -> None:
        async with self._lock:
            await asyncio.to_thread(self._commit, data)

    async def upsert_documents(self, data: Dataset) -> None:
        async with self._lock:
            await asyncio.to_thread(self._merge, data)
