"""
Source tree scanning for backup operations.

LocalSource walks a directory, applies exclusion patterns, and yields the
entries that belong in an archive together with the metadata incremental
backups compare against.
"""

import os
import stat
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Iterator, Optional
from fnmatch import fnmatch

from backupctl.errors import SourceNotFound


@dataclass(frozen=True)
class SourceEntry:
    """A single path inside the source tree."""

    path: str           # absolute filesystem path
    relative_path: str  # POSIX path relative to the source root
    is_dir: bool
    mtime_ns: int
    size: int
    dev: int
    ino: int

    @property
    def signature(self) -> dict:
        """Metadata recorded in the snapshot state."""
        return {
            'mtime_ns': self.mtime_ns,
            'size': self.size,
            'dev': self.dev,
            'ino': self.ino,
        }


class LocalSource:
    """
    Handler for a local source directory.

    Walks the tree without following symlinks and skips anything matching
    an exclude pattern. An excluded directory is not descended into.
    """

    def __init__(self, root: str, exclude_patterns: List[str] = None):
        """
        Initialize local source handler.

        Args:
            root: Directory to back up
            exclude_patterns: List of glob patterns to exclude (e.g., .git, node_modules, *.pyc)
        """
        self.root = Path(root).expanduser()
        self.exclude_patterns = list(exclude_patterns or [])

    @property
    def archive_root(self) -> str:
        """Top-level name the tree is stored under inside archives."""
        return self.root.resolve().name

    def validate(self):
        """
        Check the source directory is usable.

        Raises:
            SourceNotFound: If the root does not exist, is not a directory, or is unreadable
        """
        if not self.root.exists():
            raise SourceNotFound(f"Source directory does not exist: {self.root}")
        if not self.root.is_dir():
            raise SourceNotFound(f"Source path is not a directory: {self.root}")
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise SourceNotFound(f"Source directory is not readable: {self.root}")

    def _should_exclude(self, relative_path: str) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            relative_path: POSIX path relative to the source root

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_name = PurePosixPath(relative_path).name

        for pattern in self.exclude_patterns:
            # Match against relative path or just the name
            if fnmatch(relative_path, pattern) or fnmatch(path_name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def _make_entry(self, path: str, relative_path: str) -> Optional[SourceEntry]:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            # Removed while the tree was being walked
            return None
        return SourceEntry(
            path=path,
            relative_path=relative_path,
            is_dir=stat.S_ISDIR(st.st_mode),
            mtime_ns=st.st_mtime_ns,
            size=st.st_size,
            dev=st.st_dev,
            ino=st.st_ino,
        )

    def scan(self) -> Iterator[SourceEntry]:
        """
        Walk the source tree.

        Yields:
            SourceEntry for every non-excluded directory, file and symlink,
            parents before children, in a stable (sorted) order

        Raises:
            SourceNotFound: If the root is not usable or a directory cannot be read
        """
        self.validate()

        def on_error(error: OSError):
            raise SourceNotFound(f"Cannot read {error.filename}: {error.strerror}") from error

        root = str(self.root)
        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            rel_dir = os.path.relpath(dirpath, root)
            rel_dir = '' if rel_dir == '.' else Path(rel_dir).as_posix()

            kept_dirs = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if self._should_exclude(rel):
                    continue
                entry = self._make_entry(os.path.join(dirpath, name), rel)
                if entry is None:
                    continue
                # Symlinked directories are archived as links, never followed
                if entry.is_dir:
                    kept_dirs.append(name)
                yield entry
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if self._should_exclude(rel):
                    continue
                entry = self._make_entry(os.path.join(dirpath, name), rel)
                if entry is not None:
                    yield entry

    def collect(self) -> List[SourceEntry]:
        """Return the full scan as a list."""
        return list(self.scan())
