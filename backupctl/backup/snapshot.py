"""
Snapshot state for incremental backups.

The state file records, per archived path, the metadata seen on the last
incremental pass. Only the archive builder reads or writes it, and every
write replaces the file atomically.
"""

import os
import json
import tempfile
import logging
from typing import Dict, List

from backupctl.errors import ArchiveCreationFailed
from .sources import SourceEntry


logger = logging.getLogger(__name__)

STATE_VERSION = 1


class SnapshotState:
    """Per-file metadata from the most recent incremental pass."""

    def __init__(self, path: str, files: Dict[str, dict] = None):
        """
        Args:
            path: Location of the state file
            files: Mapping of relative path -> signature dict
        """
        self.path = path
        self.files = dict(files or {})

    @classmethod
    def load(cls, path: str) -> 'SnapshotState':
        """
        Read the state file.

        A missing file yields an empty state (the next incremental includes
        everything). A corrupt file is an error rather than a silent reset,
        since resetting would quietly turn the next run into a full copy.

        Raises:
            ArchiveCreationFailed: If the file exists but cannot be parsed
        """
        if not os.path.exists(path):
            logger.info(f"No snapshot state at {path}; next incremental includes all files")
            return cls(path)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ArchiveCreationFailed(f"Snapshot state {path} is unreadable: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get('files'), dict):
            raise ArchiveCreationFailed(f"Snapshot state {path} has an unexpected layout")

        return cls(path, data['files'])

    def is_changed(self, entry: SourceEntry) -> bool:
        """True if the entry is new or its metadata differs from the last pass."""
        return self.files.get(entry.relative_path) != entry.signature

    def changed_entries(self, entries: List[SourceEntry]) -> List[SourceEntry]:
        """
        Select the entries an incremental archive must contain.

        Directories are always kept so the tree layout (including empty
        directories) survives a restore.
        """
        return [e for e in entries if e.is_dir or self.is_changed(e)]

    def updated(self, entries: List[SourceEntry]) -> 'SnapshotState':
        """Return the state describing the given scan."""
        return SnapshotState(self.path, {e.relative_path: e.signature for e in entries})

    def save(self):
        """
        Atomically rewrite the state file.

        Raises:
            ArchiveCreationFailed: If the file cannot be written
        """
        directory = os.path.dirname(os.path.abspath(self.path))
        payload = {'version': STATE_VERSION, 'files': self.files}

        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.snapshot-', dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise ArchiveCreationFailed(f"Failed to write snapshot state {self.path}: {e}") from e

        logger.info(f"Snapshot state updated: {self.path} ({len(self.files)} entries)")
