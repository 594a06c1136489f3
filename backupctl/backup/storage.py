"""
Backup destination handling.

BackupStore owns the destination directory: it turns file names back into
BackupEntry records, lists the backup set, measures free space and deletes
archives together with their digest records.
"""

import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .compression import (
    ARCHIVE_EXTENSION,
    INCREMENTAL_TAG,
    KIND_FULL,
    KIND_INCREMENTAL,
    generate_archive_filename,
    parse_archive_filename,
    strip_archive_extension,
)
from .digest import DIGEST_SUFFIX, digest_path_for, read_digest
from backupctl.errors import ArchiveCreationFailed, InvalidArguments, NotFound


BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class BackupEntry:
    """One archive in the destination directory."""

    path: str
    timestamp: datetime
    kind: str
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def digest_path(self) -> str:
        return digest_path_for(self.path)

    @property
    def is_incremental(self) -> bool:
        return self.kind == KIND_INCREMENTAL

    @property
    def is_verified(self) -> bool:
        """True if the entry has a digest record (it may still fail verification)."""
        return self.digest is not None


class BackupStore:
    """
    Handler for the local backup destination.

    Layout: {destination}/{prefix}-{timestamp}[-inc].tar.gz plus a sibling
    '.sha256' record for each archive.
    """

    def __init__(self, destination: str, prefix: str, date_format: str):
        """
        Initialize backup store.

        Args:
            destination: Directory that holds the backups
            prefix: Archive name prefix
            date_format: strftime format embedded in archive names
        """
        self.destination = Path(destination).expanduser()
        self.prefix = prefix
        self.date_format = date_format

    def ensure_destination(self):
        """
        Create the destination directory if it doesn't exist.

        Raises:
            ArchiveCreationFailed: If the directory cannot be created
        """
        try:
            self.destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveCreationFailed(f"Failed to create backup destination {self.destination}: {e}") from e

    def archive_path_for(self, timestamp: datetime, incremental: bool = False) -> str:
        """Full path of the archive a backup taken at `timestamp` would produce."""
        filename = generate_archive_filename(self.prefix, timestamp, self.date_format, incremental)
        return str(self.destination / filename)

    def free_space_mb(self) -> int:
        """
        Available space on the destination filesystem in whole MB.

        When the destination does not exist yet, the nearest existing
        ancestor is measured, so the check never needs to create anything.
        """
        existing = self.destination.absolute()
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        return shutil.disk_usage(str(existing)).free // BYTES_PER_MB

    def entry_from_path(self, path: str) -> Optional[BackupEntry]:
        """Build a BackupEntry for an archive path, or None if the name is not ours."""
        parsed = parse_archive_filename(os.path.basename(path), self.prefix, self.date_format)
        if parsed is None:
            return None
        timestamp, kind = parsed
        return BackupEntry(path=str(path), timestamp=timestamp, kind=kind, digest=read_digest(str(path)))

    def list_entries(self) -> List[BackupEntry]:
        """
        List all backups in the destination, newest first.

        Files whose names don't parse with the configured prefix and date
        format are ignored.

        Returns:
            BackupEntry list ordered by (timestamp, name) descending
        """
        if not self.destination.is_dir():
            return []

        entries = []
        for file_path in self.destination.iterdir():
            if not file_path.is_file() or not file_path.name.endswith(ARCHIVE_EXTENSION):
                continue
            entry = self.entry_from_path(str(file_path))
            if entry is not None:
                entries.append(entry)

        entries.sort(key=lambda e: (e.timestamp, e.name), reverse=True)
        return entries

    def orphan_digests(self) -> List[str]:
        """Digest records whose archive no longer exists."""
        if not self.destination.is_dir():
            return []

        orphans = []
        for file_path in sorted(self.destination.iterdir()):
            if file_path.name.endswith(ARCHIVE_EXTENSION + DIGEST_SUFFIX):
                archive = str(file_path)[:-len(DIGEST_SUFFIX)]
                if not os.path.exists(archive):
                    orphans.append(str(file_path))
        return orphans

    def resolve(self, name: str) -> BackupEntry:
        """
        Find a backup by file name.

        Args:
            name: Archive file name as shown by --list

        Returns:
            Matching BackupEntry

        Raises:
            InvalidArguments: If the name contains a path separator
            NotFound: If there is no such archive
        """
        if not name or os.path.basename(name) != name or name in ('.', '..'):
            raise InvalidArguments(f"Backup name must be a plain file name: {name!r}")

        path = self.destination / name
        if not path.is_file():
            raise NotFound(f"Backup not found: {name} (in {self.destination})")

        entry = self.entry_from_path(str(path))
        if entry is None:
            # Present but not named by us; still restorable by explicit name
            entry = BackupEntry(
                path=str(path),
                timestamp=datetime.fromtimestamp(path.stat().st_mtime),
                kind=KIND_INCREMENTAL if strip_archive_extension(name).endswith(INCREMENTAL_TAG) else KIND_FULL,
                digest=read_digest(str(path)),
            )
        return entry

    def delete(self, entry: BackupEntry):
        """
        Delete an archive and its digest record together.

        Raises:
            OSError: If either file cannot be removed
        """
        for path in (entry.path, entry.digest_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def delete_file(self, path: str):
        """Delete a single stray file (e.g. an orphaned digest record)."""
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
