"""Payload encoding, dataset checksums, and incremental diffs.

A payload is gzip-compressed canonical JSON.  FULL payloads carry every
collection; INCREMENTAL payloads carry, per collection, the upserted
documents and the primary keys of deleted documents relative to the
parent state.

The checksum recorded on a backup is computed over the *dataset state*
the backup restores to (not over the payload bytes), so a restored system
can be verified against it directly.
"""

import copy
import gzip
import hashlib
import json
import zlib
from datetime import datetime
from typing import Any

from ledger_backup.adapters.base import Dataset
from ledger_backup.models import BackupType

PAYLOAD_FORMAT = "ledger-backup/1"


class PayloadError(ValueError):
    """Payload bytes could not be decoded into a valid backup body."""


def normalize_dataset(data: Dataset) -> Dataset:
    """Round-trip through JSON so values compare the way they will be stored."""
    return json.loads(json.dumps(data, default=str))


def _pk_key(doc: dict[str, Any], primary_key: str) -> str:
    return json.dumps(doc.get(primary_key), sort_keys=True, default=str)


def canonical_bytes(data: Dataset, primary_key: str = "_id") -> bytes:
    """Canonical JSON encoding: collections by name, documents by primary key."""
    ordered = {
        name: sorted(data[name], key=lambda d: _pk_key(d, primary_key))
        for name in sorted(data)
    }
    return json.dumps(
        ordered, sort_keys=True, separators=(",", ":"), default=str
    ).encode("utf-8")


def compute_checksum(data: Dataset, primary_key: str = "_id") -> str:
    """SHA-256 of the canonical dataset, with ``sha256:`` prefix."""
    return "sha256:" + hashlib.sha256(canonical_bytes(data, primary_key)).hexdigest()


def dataset_counts(data: Dataset) -> dict[str, int]:
    return {name: len(docs) for name, docs in data.items()}


# ============================================================================
# Encoding
# ============================================================================


def encode_payload(body: dict[str, Any]) -> tuple[bytes, int]:
    """Compress a payload body.

    Returns:
        Tuple of (compressed bytes, uncompressed size).
    """
    raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    # mtime=0 keeps identical bodies byte-identical (same CID)
    return gzip.compress(raw, mtime=0), len(raw)


def decode_payload(payload: bytes, expected_type: BackupType | None = None) -> dict[str, Any]:
    """Decompress and validate a payload body.

    Raises:
        PayloadError: If the bytes are corrupt or the body is malformed.
    """
    try:
        body = json.loads(gzip.decompress(payload).decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadError(f"Corrupt payload: {e}") from e

    if not isinstance(body, dict) or body.get("format") != PAYLOAD_FORMAT:
        raise PayloadError(f"Unsupported payload format: {body.get('format') if isinstance(body, dict) else None}")

    backup_type = body.get("type")
    if expected_type is not None and backup_type != expected_type.value:
        raise PayloadError(f"Payload type {backup_type} does not match {expected_type.value}")
    if backup_type == BackupType.FULL.value and not isinstance(body.get("collections"), dict):
        raise PayloadError("FULL payload missing collections")
    if backup_type == BackupType.INCREMENTAL.value and not isinstance(body.get("changes"), dict):
        raise PayloadError("INCREMENTAL payload missing changes")
    return body


def full_body(backup_id: str, created_at: datetime, data: Dataset) -> dict[str, Any]:
    return {
        "format": PAYLOAD_FORMAT,
        "backup_id": backup_id,
        "type": BackupType.FULL.value,
        "created_at": created_at.isoformat(),
        "parent_backup_id": None,
        "collections": data,
    }


def incremental_body(
    backup_id: str,
    created_at: datetime,
    parent_backup_id: str,
    changes: dict[str, dict[str, list]],
) -> dict[str, Any]:
    return {
        "format": PAYLOAD_FORMAT,
        "backup_id": backup_id,
        "type": BackupType.INCREMENTAL.value,
        "created_at": created_at.isoformat(),
        "parent_backup_id": parent_backup_id,
        "changes": changes,
    }


# ============================================================================
# Diffs
# ============================================================================


def compute_changes(
    before: Dataset,
    after: Dataset,
    primary_key: str = "_id",
) -> dict[str, dict[str, list]]:
    """Per-collection upserts and deletions turning ``before`` into ``after``.

    Collections with no changes are omitted.  A collection present in
    ``before`` but missing from ``after`` is treated as emptied.

    Raises:
        ValueError: If a document lacks the primary key field.
    """
    changes: dict[str, dict[str, list]] = {}
    for name in sorted(set(before) | set(after)):
        old = _index(before.get(name, []), primary_key, name)
        new = _index(after.get(name, []), primary_key, name)

        upserted = [doc for key, doc in new.items() if old.get(key) != doc]
        deleted = [json.loads(key) for key in old if key not in new]

        if upserted or deleted or name not in before:
            changes[name] = {"upserted": upserted, "deleted": deleted}
    return changes


def apply_changes(
    state: Dataset,
    changes: dict[str, dict[str, list]],
    primary_key: str = "_id",
) -> Dataset:
    """Return a new dataset with ``changes`` applied to ``state``."""
    result = copy.deepcopy(state)
    for name, change in changes.items():
        docs = _index(result.get(name, []), primary_key, name)
        for key in change.get("deleted", []):
            docs.pop(json.dumps(key, sort_keys=True, default=str), None)
        for doc in change.get("upserted", []):
            docs[_pk_key(doc, primary_key)] = copy.deepcopy(doc)
        result[name] = list(docs.values())
    return result


def _index(docs: list[dict[str, Any]], primary_key: str, collection: str) -> dict[str, dict]:
    indexed: dict[str, dict] = {}
    for doc in docs:
        if primary_key not in doc:
            raise ValueError(f"Document in {collection} missing primary key '{primary_key}'")
        indexed[_pk_key(doc, primary_key)] = doc
    return indexed
