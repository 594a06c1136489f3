"""
Backup module for backupctl.

This module handles the backup lifecycle:
- Source scanning and exclusions
- Archive creation (full and incremental)
- Digest stamping and verification
- Locking
- Rotation of old backups
- Restore
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup, list_backups, restore_backup, verify_backup
from .builder import ArchiveBuilder
from .sources import LocalSource
from .storage import BackupStore, BackupEntry
from .lock import LockManager
from .retention import RetentionManager
from .restore import RestoreEngine

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'list_backups',
    'restore_backup',
    'verify_backup',
    'ArchiveBuilder',
    'LocalSource',
    'BackupStore',
    'BackupEntry',
    'LockManager',
    'RetentionManager',
    'RestoreEngine'
]
