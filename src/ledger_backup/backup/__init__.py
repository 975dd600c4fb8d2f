"""Backup creation, payload codec, chain resolution, and ledger mirroring.

Usage:
    from ledger_backup.backup import BackupEngine, LedgerMirrorWorker
"""

from ledger_backup.backup.chain import materialize, resolve_chain, stage_link
from ledger_backup.backup.engine import BackupEngine, make_backup_id
from ledger_backup.backup.mirror import LedgerMirrorWorker
from ledger_backup.backup.payload import (
    PayloadError,
    apply_changes,
    compute_changes,
    compute_checksum,
    decode_payload,
    encode_payload,
)

__all__ = [
    "BackupEngine",
    "LedgerMirrorWorker",
    "PayloadError",
    "apply_changes",
    "compute_changes",
    "compute_checksum",
    "decode_payload",
    "encode_payload",
    "make_backup_id",
    "materialize",
    "resolve_chain",
    "stage_link",
]
