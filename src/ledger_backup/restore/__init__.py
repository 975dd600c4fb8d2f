"""Restore engine for single backups and backup chains.

Usage:
    from ledger_backup.restore import RestoreEngine
"""

from ledger_backup.restore.engine import TRANSITIONS, RestoreEngine

__all__ = ["RestoreEngine", "TRANSITIONS"]
