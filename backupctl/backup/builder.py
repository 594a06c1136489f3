"""
Archive builder - produces full and incremental snapshots of a source tree.

Steps for one build:
1. Validate the source directory
2. Check free space on the destination filesystem
3. Scan the tree (and, for incrementals, diff it against the snapshot state)
4. Write the archive and its digest record
5. Persist the new snapshot state (incrementals only)

Dry-run stops after step 3 and touches nothing.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from backupctl.config import Config
from .compression import KIND_FULL, KIND_INCREMENTAL, create_archive, get_archive_size
from .digest import DigestRecord, stamp
from backupctl.errors import InsufficientSpace
from .snapshot import SnapshotState
from .sources import LocalSource
from .storage import BackupEntry, BackupStore


logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """Outcome of one archive build (or of a dry-run plan)."""

    archive_path: str
    kind: str
    timestamp: datetime
    file_count: int
    dry_run: bool = False
    entry: Optional[BackupEntry] = None
    digest: Optional[DigestRecord] = None
    size_bytes: int = 0

    @property
    def name(self) -> str:
        return os.path.basename(self.archive_path)

    def describe(self) -> str:
        verb = 'Would create' if self.dry_run else 'Created'
        return f"{verb} {self.kind} backup {self.name} ({self.file_count} entries)"


class ArchiveBuilder:
    """
    Creates full and incremental archives in the configured destination.
    """

    def __init__(self, config: Config, store: Optional[BackupStore] = None):
        """
        Args:
            config: Run configuration
            store: Backup destination (built from config when omitted)
        """
        self.config = config
        self.store = store or BackupStore(
            config.backup_destination,
            config.backup_prefix,
            config.date_format
        )

    def check_space(self) -> int:
        """
        Compare free space on the destination filesystem with the configured minimum.

        Returns:
            Available space in MB

        Raises:
            InsufficientSpace: If less than min_space_mb is available
        """
        available = self.store.free_space_mb()
        required = self.config.min_space_mb

        if available < required:
            raise InsufficientSpace(
                f"Not enough disk space! Available: {available}MB, Required: {required}MB"
            )

        logger.debug(f"Free space OK: {available}MB available, {required}MB required")
        return available

    def create_full(
        self,
        source_dir: str,
        exclude_patterns: Optional[List[str]] = None,
        dry_run: bool = False,
        check_space: bool = True
    ) -> BuildResult:
        """
        Create a full archive of the source tree.

        Args:
            source_dir: Directory to back up
            exclude_patterns: Glob patterns to skip (defaults to the config's)
            dry_run: Plan only, write nothing
            check_space: Enforce the free-space minimum (False when the
                caller already checked it)

        Returns:
            BuildResult for the created (or planned) archive

        Raises:
            SourceNotFound: If source_dir is missing or unreadable
            InsufficientSpace: If the destination is below the free-space minimum
            ArchiveCreationFailed: If the archive or its digest cannot be written
        """
        return self._build(source_dir, exclude_patterns, None, dry_run, check_space)

    def create_incremental(
        self,
        source_dir: str,
        exclude_patterns: Optional[List[str]] = None,
        snapshot_state_path: Optional[str] = None,
        dry_run: bool = False,
        check_space: bool = True
    ) -> BuildResult:
        """
        Create an archive containing only entries changed since the last
        incremental pass, then record the current tree in the snapshot state.

        Args:
            source_dir: Directory to back up
            exclude_patterns: Glob patterns to skip (defaults to the config's)
            snapshot_state_path: State file (defaults to the config's)
            dry_run: Plan only, write nothing
            check_space: Enforce the free-space minimum

        Returns:
            BuildResult for the created (or planned) archive

        Raises:
            SourceNotFound: If source_dir is missing or unreadable
            InsufficientSpace: If the destination is below the free-space minimum
            ArchiveCreationFailed: If the archive, digest or state cannot be written
        """
        return self._build(
            source_dir,
            exclude_patterns,
            snapshot_state_path or self.config.snapshot_file,
            dry_run,
            check_space
        )

    def _build(
        self,
        source_dir: str,
        exclude_patterns: Optional[List[str]],
        snapshot_state_path: Optional[str],
        dry_run: bool,
        check_space: bool
    ) -> BuildResult:
        incremental = snapshot_state_path is not None
        kind = KIND_INCREMENTAL if incremental else KIND_FULL

        if exclude_patterns is None:
            exclude_patterns = list(self.config.exclude_patterns)

        source = LocalSource(source_dir, exclude_patterns)
        source.validate()
        if check_space:
            self.check_space()

        state = SnapshotState.load(snapshot_state_path) if incremental else None

        scanned = source.collect()
        selected = state.changed_entries(scanned) if incremental else scanned

        timestamp = datetime.now()
        archive_path = self.store.archive_path_for(timestamp, incremental)
        result = BuildResult(
            archive_path=archive_path,
            kind=kind,
            timestamp=timestamp,
            file_count=len(selected),
            dry_run=dry_run
        )

        if dry_run:
            logger.info(f"[DRY-RUN] Would create {kind} backup {archive_path} from {source_dir} "
                        f"({len(selected)} entries)")
            return result

        logger.info(f"Creating {kind} backup: {archive_path}")
        self.store.ensure_destination()
        create_archive(str(source.root), selected, source.archive_root, archive_path)

        try:
            result.digest = stamp(archive_path)
        except BaseException:
            # An archive without a digest record never counts as created
            os.remove(archive_path)
            raise

        if incremental:
            state.updated(scanned).save()

        result.size_bytes = get_archive_size(archive_path)
        result.entry = self.store.entry_from_path(archive_path) or BackupEntry(
            path=archive_path,
            timestamp=timestamp,
            kind=kind,
            digest=result.digest.hexdigest
        )
        logger.info(f"Backup created: {archive_path} ({result.size_bytes / 1024 / 1024:.2f} MB)")
        return result
