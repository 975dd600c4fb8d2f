"""Tests for payload encoding, checksums, and diffs."""

import gzip
import json
from datetime import datetime, timezone

import pytest

from conftest import make_dataset
from ledger_backup.backup.payload import (
    PAYLOAD_FORMAT,
    PayloadError,
    apply_changes,
    compute_changes,
    compute_checksum,
    decode_payload,
    encode_payload,
    full_body,
    incremental_body,
    normalize_dataset,
)
from ledger_backup.models import BackupType

CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestChecksum:
    """Verify the checksum is order-independent and content-sensitive."""

    def test_prefix(self) -> None:
        assert compute_checksum(make_dataset()).startswith("sha256:")

    def test_document_and_collection_order_ignored(self) -> None:
        data = make_dataset()
        shuffled = {name: list(reversed(docs)) for name, docs in reversed(list(data.items()))}
        assert compute_checksum(data) == compute_checksum(shuffled)

    def test_field_change_detected(self) -> None:
        data = make_dataset()
        changed = make_dataset()
        changed["users"][0]["name"] = "renamed"
        assert compute_checksum(data) != compute_checksum(changed)

    def test_normalize_stringifies_datetimes(self) -> None:
        data = normalize_dataset({"events": [{"_id": 1, "at": CREATED}]})
        assert data["events"][0]["at"] == str(CREATED)


class TestEncoding:
    def test_encode_is_deterministic(self) -> None:
        body = full_body("FULL_A", CREATED, make_dataset())
        assert encode_payload(body)[0] == encode_payload(body)[0]

    def test_decode_full(self) -> None:
        payload, size = encode_payload(full_body("FULL_A", CREATED, make_dataset()))
        body = decode_payload(payload, BackupType.FULL)
        assert body["format"] == PAYLOAD_FORMAT
        assert body["backup_id"] == "FULL_A"
        assert len(body["collections"]["users"]) == 40
        assert size > len(payload)

    def test_decode_flipped_byte(self) -> None:
        payload, _ = encode_payload(full_body("FULL_A", CREATED, make_dataset()))
        corrupt = bytearray(payload)
        corrupt[len(corrupt) // 2] ^= 0xFF
        with pytest.raises(PayloadError):
            decode_payload(bytes(corrupt), BackupType.FULL)

    def test_decode_wrong_type(self) -> None:
        payload, _ = encode_payload(incremental_body("INC_A", CREATED, "FULL_A", {}))
        with pytest.raises(PayloadError, match="does not match"):
            decode_payload(payload, BackupType.FULL)

    def test_decode_unknown_format(self) -> None:
        payload = gzip.compress(json.dumps({"format": "other"}).encode())
        with pytest.raises(PayloadError, match="Unsupported payload format"):
            decode_payload(payload)

    def test_decode_not_gzip(self) -> None:
        with pytest.raises(PayloadError, match="Corrupt payload"):
            decode_payload(b"plain bytes")


class TestChanges:
    """Verify diffs capture upserts and deletions exactly."""

    def test_no_changes(self) -> None:
        assert compute_changes(make_dataset(), make_dataset()) == {}

    def test_updates_inserts_and_deletes(self) -> None:
        before = make_dataset()
        after = make_dataset()
        after["users"][0]["name"] = "renamed"
        after["users"].append({"_id": "u99", "name": "new"})
        after["orders"] = [d for d in after["orders"] if d["_id"] != 3]

        changes = compute_changes(before, after)
        assert set(changes) == {"users", "orders"}
        assert {d["_id"] for d in changes["users"]["upserted"]} == {"u0", "u99"}
        assert changes["orders"]["deleted"] == [3]

        restored = apply_changes(before, changes)
        assert compute_checksum(restored) == compute_checksum(after)

    def test_new_collection_included(self) -> None:
        after = {**make_dataset(), "reviews": []}
        changes = compute_changes(make_dataset(), after)
        assert changes["reviews"] == {"upserted": [], "deleted": []}
        assert "reviews" in apply_changes(make_dataset(), changes)

    def test_apply_does_not_mutate_input(self) -> None:
        before = make_dataset()
        apply_changes(before, {"users": {"upserted": [], "deleted": ["u0"]}})
        assert len(before["users"]) == 40

    def test_missing_primary_key(self) -> None:
        with pytest.raises(ValueError, match="missing primary key"):
            compute_changes({}, {"users": [{"name": "no id"}]})

    def test_custom_primary_key(self) -> None:
        before = {"items": [{"sku": "a", "qty": 1}]}
        after = {"items": [{"sku": "a", "qty": 2}]}
        changes = compute_changes(before, after, primary_key="sku")
        assert changes["items"]["upserted"] == [{"sku": "a", "qty": 2}]
