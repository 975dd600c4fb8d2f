"""In-memory implementations of the collaborator protocols.

Useful for embedding the backup core in a single process and for tests.
Each class exposes ``available`` (raise ``ConnectionError`` when False)
and ``latency`` (seconds slept before each call) switches to simulate
outages and slow responses.

Usage:
    from ledger_backup.adapters.memory import (
        InMemoryDataSource,
        InMemoryLedgerMirror,
        InMemoryMetadataStore,
        InMemoryStorageAdapter,
    )

    ledger = InMemoryLedgerMirror()
    ledger.available = False   # simulate an outage
"""

import asyncio
import copy
import hashlib
import uuid

from ledger_backup.adapters.base import Dataset
from ledger_backup.errors import LedgerConflictError
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    LedgerStats,
    newest_first,
)


class _Switchable:
    """Outage and latency switches shared by the in-memory fakes."""

    name = "service"

    def __init__(self) -> None:
        self.available = True
        self.latency = 0.0
        self.calls = 0

    async def _enter(self) -> None:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise ConnectionError(f"{self.name} unavailable")


# ============================================================================
# Storage
# ============================================================================


class InMemoryStorageAdapter(_Switchable):
    """Content-addressed blob store held in a dict."""

    name = "storage"

    def __init__(self) -> None:
        super().__init__()
        self.blobs: dict[str, bytes] = {}

    async def put(self, payload: bytes) -> str:
        await self._enter()
        cid = "sha256-" + hashlib.sha256(payload).hexdigest()
        self.blobs[cid] = bytes(payload)
        return cid

    async def get(self, cid: str) -> bytes:
        await self._enter()
        return self.blobs[cid]

    async def delete(self, cid: str) -> None:
        await self._enter()
        self.blobs.pop(cid, None)

    async def usage(self) -> int:
        await self._enter()
        return sum(len(b) for b in self.blobs.values())

    def corrupt(self, cid: str, offset: int = 0) -> None:
        """Flip one byte of a stored payload (test helper)."""
        data = bytearray(self.blobs[cid])
        index = offset % len(data)
        data[index] ^= 0xFF
        self.blobs[cid] = bytes(data)


# ============================================================================
# Ledger
# ============================================================================


class InMemoryLedgerMirror(_Switchable):
    """Append-only ledger held in a list of entries.

    ``entries`` is the raw log: one ``submit`` entry per backup id plus one
    ``status`` entry per status change.  Queries fold the log into the
    current view of each record.
    """

    name = "ledger"

    def __init__(self) -> None:
        super().__init__()
        self.entries: list[dict] = []
        self._records: dict[str, BackupRecord] = {}
        self.drop_submissions = False   # accept submit() but record nothing

    async def submit(self, record: BackupRecord) -> str:
        await self._enter()
        existing = self._records.get(record.backup_id)
        if existing is not None:
            if existing.identity() != record.identity():
                raise LedgerConflictError(
                    f"Ledger entry {record.backup_id} is immutable",
                    backup_id=record.backup_id,
                    step="ledger_submit",
                )
            return existing.ledger_tx_id

        tx_id = uuid.uuid4().hex
        if self.drop_submissions:
            return tx_id
        mirrored = record.model_copy(
            update={"status": BackupStatus.ACTIVE, "ledger_tx_id": tx_id}
        )
        self.entries.append({"op": "submit", "tx_id": tx_id, "record": mirrored})
        self._records[record.backup_id] = mirrored
        return tx_id

    async def mark_status(self, backup_id: str, status: BackupStatus) -> str:
        await self._enter()
        current = self._records[backup_id]
        tx_id = uuid.uuid4().hex
        self.entries.append(
            {"op": "status", "tx_id": tx_id, "backup_id": backup_id, "status": status}
        )
        self._records[backup_id] = current.model_copy(update={"status": status})
        return tx_id

    async def query_all(self, filter: BackupFilter | None = None) -> list[BackupRecord]:
        await self._enter()
        records = [r.model_copy() for r in self._records.values()]
        if filter is not None:
            records = [r for r in records if filter.matches(r)]
        return newest_first(records)

    async def query_by_id(self, backup_id: str) -> BackupRecord | None:
        await self._enter()
        record = self._records.get(backup_id)
        return record.model_copy() if record else None

    async def stats(self) -> LedgerStats:
        await self._enter()
        return LedgerStats.from_records(list(self._records.values()))


# ============================================================================
# Primary Metadata Store
# ============================================================================


class InMemoryMetadataStore(_Switchable):
    """Primary metadata store held in a dict keyed by backup id."""

    name = "primary"

    def __init__(self) -> None:
        super().__init__()
        self.records: dict[str, BackupRecord] = {}

    async def insert(self, record: BackupRecord) -> None:
        await self._enter()
        if record.backup_id in self.records:
            raise ValueError(f"Backup {record.backup_id} already exists")
        self.records[record.backup_id] = record.model_copy()

    async def get(self, backup_id: str) -> BackupRecord | None:
        await self._enter()
        record = self.records.get(backup_id)
        return record.model_copy() if record else None

    async def query(self, filter: BackupFilter | None = None) -> list[BackupRecord]:
        await self._enter()
        records = [r.model_copy() for r in self.records.values()]
        if filter is not None:
            records = [r for r in records if filter.matches(r)]
        return newest_first(records)

    async def update_status(
        self,
        backup_id: str,
        status: BackupStatus,
        ledger_tx_id: str | None = None,
    ) -> BackupRecord:
        await self._enter()
        update: dict = {"status": status}
        if ledger_tx_id is not None:
            update["ledger_tx_id"] = ledger_tx_id
        record = self.records[backup_id].model_copy(update=update)
        self.records[backup_id] = record
        return record.model_copy()

    async def purge(self, backup_id: str) -> None:
        await self._enter()
        self.records.pop(backup_id, None)

    async def ping(self) -> bool:
        try:
            await self._enter()
        except ConnectionError:
            return False
        return True


# ============================================================================
# Data Source
# ============================================================================


class InMemoryDataSource(_Switchable):
    """Live collections held in a dict of lists."""

    name = "data"

    def __init__(self, collections: Dataset | None = None, primary_key: str = "_id") -> None:
        super().__init__()
        self.primary_key = primary_key
        self.collections: Dataset = copy.deepcopy(collections or {})
        self.fail_next_replace = False  # raise once on replace_collections (test hook)

    async def snapshot(self, collections: list[str] | None = None) -> Dataset:
        await self._enter()
        names = self.collections.keys() if collections is None else collections
        return {name: copy.deepcopy(self.collections.get(name, [])) for name in names}

    async def replace_collections(self, data: Dataset) -> None:
        await self._enter()
        if self.fail_next_replace:
            self.fail_next_replace = False
            raise ConnectionError("replace interrupted")
        swapped = dict(self.collections)
        for name, docs in data.items():
            swapped[name] = copy.deepcopy(docs)
        self.collections = swapped

    async def upsert_documents(self, data: Dataset) -> None:
        await self._enter()
        pk = self.primary_key
        for name, docs in data.items():
            existing = {d[pk]: d for d in self.collections.get(name, [])}
            for doc in docs:
                existing[doc[pk]] = copy.deepcopy(doc)
            self.collections[name] = list(existing.values())
