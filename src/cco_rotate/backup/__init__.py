"""Pre-mutation snapshots used for rollback."""

from cco_rotate.backup.store import BackupStore, FileBackupStore, verify_backups

__all__ = [
    "BackupStore",
    "FileBackupStore",
    "verify_backups",
]
