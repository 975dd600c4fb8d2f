"""Backup chain resolution and link materialization.

A chain is ``FULL -> INCREMENTAL -> ... -> target``.  ``resolve_chain``
walks ``parent_backup_id`` links root-ward from the target and returns the
chain in ascending (parent-to-child) order, or raises ``ChainBrokenError``
when a link is missing, inactive, of the wrong type, cyclic, or out of
chronological order.

``stage_link`` turns one link's payload plus the state of its parent into
the link's full dataset state, verifying it against the link's checksum.
"""

import logging
from typing import Awaitable, Callable

from ledger_backup.adapters.base import Dataset, StorageAdapter
from ledger_backup.backup.payload import (
    PayloadError,
    apply_changes,
    compute_checksum,
    decode_payload,
)
from ledger_backup.config.models import RetrySettings
from ledger_backup.errors import ChainBrokenError, ChecksumMismatchError, StorageError
from ledger_backup.models import BackupRecord, BackupStatus, BackupType
from ledger_backup.retry import call_with_retry

logger = logging.getLogger(__name__)

RecordLookup = Callable[[str], Awaitable[BackupRecord | None]]

# Hard stop for chain walks, independent of max_chain_depth
MAX_CHAIN_WALK = 10_000


async def resolve_chain(
    backup_id: str,
    lookup: RecordLookup,
    allowed_statuses: frozenset[BackupStatus] = frozenset({BackupStatus.ACTIVE}),
) -> list[BackupRecord]:
    """Resolve ``backup_id`` to its chain, FULL first.

    Args:
        backup_id: Target backup (FULL or INCREMENTAL).
        lookup: Coroutine returning a record by id, or ``None`` if absent.
        allowed_statuses: Statuses a link may have.

    Returns:
        Chain records in ascending parent-to-child order.

    Raises:
        ChainBrokenError: If any link is missing, has a disallowed status,
            repeats (cycle), has the wrong type, or predates its parent.
    """
    chain: list[BackupRecord] = []
    seen: set[str] = set()
    current_id: str | None = backup_id

    while current_id is not None:
        if current_id in seen:
            raise ChainBrokenError(
                f"Cycle detected in chain of {backup_id} at {current_id}",
                backup_id=backup_id,
                step="resolve_chain",
                link=current_id,
            )
        if len(seen) >= MAX_CHAIN_WALK:
            raise ChainBrokenError(
                f"Chain of {backup_id} exceeds {MAX_CHAIN_WALK} links",
                backup_id=backup_id,
                step="resolve_chain",
            )
        seen.add(current_id)

        record = await lookup(current_id)
        if record is None:
            raise ChainBrokenError(
                f"Missing link {current_id} in chain of {backup_id}",
                backup_id=backup_id,
                step="resolve_chain",
                link=current_id,
            )
        if record.status not in allowed_statuses:
            raise ChainBrokenError(
                f"Link {current_id} in chain of {backup_id} is {record.status.value}",
                backup_id=backup_id,
                step="resolve_chain",
                link=current_id,
                status=record.status.value,
            )
        if chain and record.created_at > chain[-1].created_at:
            raise ChainBrokenError(
                f"Link {current_id} is newer than its child {chain[-1].backup_id}",
                backup_id=backup_id,
                step="resolve_chain",
                link=current_id,
            )

        chain.append(record)
        current_id = record.parent_backup_id

    chain.reverse()
    if chain[0].type is not BackupType.FULL:
        raise ChainBrokenError(
            f"Chain of {backup_id} does not start with a FULL backup",
            backup_id=backup_id,
            step="resolve_chain",
            root=chain[0].backup_id,
        )
    return chain


async def fetch_payload(
    storage: StorageAdapter,
    record: BackupRecord,
    retry: RetrySettings,
) -> bytes:
    """Fetch a record's payload with retries (``StorageError`` when exhausted)."""

    async def _get() -> bytes:
        try:
            return await storage.get(record.cid)
        except KeyError as e:
            raise StorageError(
                f"Payload {record.cid} not found in storage",
                backup_id=record.backup_id,
                step="fetch_payload",
                cause=e,
            ) from e

    return await call_with_retry(
        _get,
        settings=retry,
        error_type=StorageError,
        description=f"Fetching payload {record.cid}",
        backup_id=record.backup_id,
        step="fetch_payload",
    )


def stage_link(
    record: BackupRecord,
    payload: bytes,
    base_state: Dataset | None,
    primary_key: str = "_id",
) -> Dataset:
    """Build the dataset state of ``record`` and verify its checksum.

    Args:
        record: The link being staged.
        payload: Raw payload bytes from storage.
        base_state: State of the parent link (ignored for FULL).
        primary_key: Document primary key field.

    Returns:
        The dataset this link restores to.

    Raises:
        ChecksumMismatchError: If the payload is corrupt or the resulting
            state does not match ``record.checksum``.
    """
    try:
        body = decode_payload(payload, expected_type=record.type)
    except PayloadError as e:
        raise ChecksumMismatchError(
            f"Payload of {record.backup_id} is corrupt: {e}",
            backup_id=record.backup_id,
            step="VALIDATING",
            cause=e,
        ) from e

    if body.get("backup_id") != record.backup_id:
        raise ChecksumMismatchError(
            f"Payload belongs to {body.get('backup_id')}, not {record.backup_id}",
            backup_id=record.backup_id,
            step="VALIDATING",
        )

    if record.type is BackupType.FULL:
        state = body["collections"]
    else:
        state = apply_changes(base_state or {}, body["changes"], primary_key)

    actual = compute_checksum(state, primary_key)
    if actual != record.checksum:
        raise ChecksumMismatchError(
            f"Checksum mismatch for {record.backup_id}: "
            f"expected {record.checksum}, got {actual}",
            backup_id=record.backup_id,
            step="VALIDATING",
            expected=record.checksum,
            actual=actual,
        )
    return state


async def materialize(
    storage: StorageAdapter,
    chain: list[BackupRecord],
    retry: RetrySettings,
    primary_key: str = "_id",
) -> Dataset:
    """Rebuild the dataset state at the tip of ``chain`` (no live writes)."""
    state: Dataset | None = None
    for record in chain:
        payload = await fetch_payload(storage, record, retry)
        state = stage_link(record, payload, state, primary_key)
    logger.debug("Materialized chain ending at %s", chain[-1].backup_id)
    return state or {}
