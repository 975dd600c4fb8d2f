"""Backup and restore locks.

The two named locks are mutually exclusive: while either is held, neither
can be acquired.  Acquisition never waits; contention raises
``LockContentionError`` immediately and the caller decides when to retry.

Usage:
    locks = OperationLocks()
    with locks.hold(LockName.BACKUP, owner="FULL_..."):
        ...
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Iterator

from ledger_backup.errors import LockContentionError
from ledger_backup.models import utcnow

logger = logging.getLogger(__name__)


class LockName(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class OperationLocks:
    """Mutually exclusive, non-blocking backup/restore locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: LockName | None = None
        self._owner: str | None = None
        self._since: datetime | None = None

    @property
    def held(self) -> LockName | None:
        return self._held

    @property
    def owner(self) -> str | None:
        return self._owner

    def acquire(self, name: LockName, owner: str = "") -> None:
        """Take ``name`` or raise ``LockContentionError`` without waiting."""
        with self._guard:
            if self._held is not None:
                raise LockContentionError(
                    f"Cannot acquire {name.value} lock: {self._held.value} lock "
                    f"held by {self._owner or 'unknown'} since {self._since}",
                    step="lock",
                    requested=name.value,
                    held=self._held.value,
                    owner=self._owner,
                )
            self._held = name
            self._owner = owner
            self._since = utcnow()
        logger.debug("Acquired %s lock (%s)", name.value, owner)

    def release(self, name: LockName) -> None:
        with self._guard:
            if self._held is not name:
                raise RuntimeError(f"{name.value} lock is not held")
            self._held = None
            self._owner = None
            self._since = None
        logger.debug("Released %s lock", name.value)

    @contextmanager
    def hold(self, name: LockName, owner: str = "") -> Iterator[None]:
        self.acquire(name, owner)
        try:
            yield
        finally:
            self.release(name)
