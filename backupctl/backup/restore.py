"""
Restore a named backup into a target directory.
"""

import os
import logging
from dataclasses import dataclass

from backupctl.errors import RestoreTargetUnreachable
from .compression import extract_archive
from .digest import require_valid
from .storage import BackupStore


logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    archive_path: str
    target_dir: str
    member_count: int
    verified: bool


class RestoreEngine:
    """Extracts archives from a BackupStore."""

    def __init__(self, store: BackupStore):
        self.store = store

    def restore(self, entry_name: str, target_dir: str, verify: bool = True) -> RestoreResult:
        """
        Extract a backup into target_dir.

        The target is created if missing. Files already present are
        overwritten without confirmation (last extracted wins). By default
        the archive's digest is checked first and a missing or mismatching
        record aborts the restore before anything is written.

        Args:
            entry_name: Archive file name in the backup destination
            target_dir: Directory to extract into
            verify: Check the digest record before extracting

        Returns:
            RestoreResult

        Raises:
            InvalidArguments: If entry_name is not a plain file name
            NotFound: If the archive does not exist
            DigestMismatch: If verification fails or the archive is corrupt
            RestoreTargetUnreachable: If the target cannot be created or written
        """
        entry = self.store.resolve(entry_name)

        if verify:
            require_valid(entry.path)
        else:
            logger.warning(f"Restoring {entry.name} without digest verification")

        try:
            os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            raise RestoreTargetUnreachable(f"Cannot create restore target {target_dir}: {e}") from e

        if not os.access(target_dir, os.W_OK | os.X_OK):
            raise RestoreTargetUnreachable(f"Restore target is not writable: {target_dir}")

        logger.info(f"Restoring {entry.name} to {target_dir}")
        count = extract_archive(entry.path, target_dir)
        logger.info(f"Restore completed: {count} entries extracted to {target_dir}")

        return RestoreResult(
            archive_path=entry.path,
            target_dir=target_dir,
            member_count=count,
            verified=verify
        )
