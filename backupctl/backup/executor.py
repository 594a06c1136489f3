"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Acquire the lock                      (IDLE -> LOCK_ACQUIRED)
2. Check free space on the destination   (-> SPACE_CHECKED)
3. Create the archive and digest record  (-> ARCHIVED)
4. Verify digest and readability         (-> VERIFIED)
5. Rotate old backups                    (-> ROTATED)
6. Release the lock                      (-> DONE)

Any failure moves the run to FAILED and skips the remaining steps; the
lock is released on every path. Listing and verification are read-only and
never take the lock; restore does.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from backupctl.config import Config
from .builder import ArchiveBuilder, BuildResult
from .digest import DigestStatus, check_readable, require_valid, verify
from .lock import LockManager
from .restore import RestoreEngine, RestoreResult
from .retention import RetentionManager, RotationResult
from .sources import LocalSource
from .storage import BackupEntry, BackupStore


logger = logging.getLogger(__name__)


class BackupState(Enum):
    IDLE = 'idle'
    LOCK_ACQUIRED = 'lock_acquired'
    SPACE_CHECKED = 'space_checked'
    ARCHIVED = 'archived'
    VERIFIED = 'verified'
    ROTATED = 'rotated'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    status: str = 'running'
    state: BackupState = BackupState.IDLE
    build: Optional[BuildResult] = None
    rotation: Optional[RotationResult] = None
    error: Optional[Exception] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    transitions: List[BackupState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return 0
        return getattr(self.error, 'exit_code', 1)


class BackupExecutor:
    """
    Orchestrates one backup run for a source directory.
    """

    def __init__(
        self,
        config: Config,
        source_dir: str,
        incremental: bool = False,
        dry_run: bool = False,
        store: Optional[BackupStore] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: Run configuration
            source_dir: Directory to back up
            incremental: Create an incremental instead of a full backup
            dry_run: Plan and log only, write nothing
            store: Backup destination (built from config when omitted)
        """
        self.config = config
        self.source_dir = source_dir
        self.incremental = incremental
        self.dry_run = dry_run
        self.store = store or BackupStore(
            config.backup_destination,
            config.backup_prefix,
            config.date_format
        )
        self.lock = LockManager(config.lock_file)
        self.builder = ArchiveBuilder(config, self.store)
        self.retention = RetentionManager(self.store)
        self.result = None
        self.logs = []

    @property
    def mode(self) -> str:
        return 'incremental' if self.incremental else 'full'

    def execute(self) -> BackupResult:
        """
        Execute the backup run.

        Returns:
            BackupResult with the final state. Failures are recorded on the
            result rather than raised; interrupts propagate after the lock
            has been released.
        """
        self.result = BackupResult(started_at=datetime.now())
        self.result.transitions.append(BackupState.IDLE)

        prefix = '[DRY-RUN] ' if self.dry_run else ''
        self._log(f"{prefix}Starting {self.mode} backup of {self.source_dir}")

        try:
            with self.lock:
                self._transition(BackupState.LOCK_ACQUIRED)
                self._execute_workflow()

            self._transition(BackupState.DONE)
            self.result.status = 'success'
            self._log(f"{prefix}Backup operation complete.")

        except Exception as e:
            self.result.status = 'failed'
            self.result.error = e
            self._transition(BackupState.FAILED)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            self.result.completed_at = datetime.now()
            if self.result.state not in (BackupState.DONE, BackupState.FAILED):
                # Interrupted (KeyboardInterrupt / SystemExit)
                self.result.status = 'failed'
                self._transition(BackupState.FAILED)
                self._log("Backup interrupted", level=logging.ERROR)

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Free space, once the source is known to exist
        LocalSource(self.source_dir).validate()
        available = self.builder.check_space()
        self._transition(BackupState.SPACE_CHECKED)
        self._log(f"Free space: {available}MB (minimum {self.config.min_space_mb}MB)")

        # Step 2: Archive (the builder stamps the digest before returning)
        if self.incremental:
            build = self.builder.create_incremental(
                self.source_dir,
                list(self.config.exclude_patterns),
                self.config.snapshot_file,
                dry_run=self.dry_run,
                check_space=False
            )
        else:
            build = self.builder.create_full(
                self.source_dir,
                list(self.config.exclude_patterns),
                dry_run=self.dry_run,
                check_space=False
            )
        self.result.build = build
        self._transition(BackupState.ARCHIVED)

        # Step 3: Verify
        if self.dry_run:
            self._log(f"[DRY-RUN] Would verify digest of {build.name}")
        else:
            require_valid(build.archive_path)
            members = check_readable(build.archive_path)
            self._log(f"Verified {build.name} ({members} members readable)")
        self._transition(BackupState.VERIFIED)

        # Step 4: Rotate (only reached after a successful, verified backup)
        self.result.rotation = self.retention.enforce_policy(self.config.retention, dry_run=self.dry_run)
        self._transition(BackupState.ROTATED)

    def _transition(self, state: BackupState):
        self.result.state = state
        self.result.transitions.append(state)
        logger.debug(f"Backup state: {state.value}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message.

        Args:
            message: Log message
            level: logging level
        """
        self.logs.append(message)
        logger.log(level, message)


def execute_backup(
    config: Config,
    source_dir: str,
    incremental: bool = False,
    dry_run: bool = False
) -> BackupResult:
    """
    Run one backup of source_dir.

    Returns:
        BackupResult with execution results
    """
    executor = BackupExecutor(config, source_dir, incremental=incremental, dry_run=dry_run)
    return executor.execute()


def list_backups(config: Config) -> List[BackupEntry]:
    """
    List the backups in the configured destination, newest first.

    Read-only; does not take the lock.
    """
    store = BackupStore(config.backup_destination, config.backup_prefix, config.date_format)
    return store.list_entries()


def verify_backup(config: Config, name: str) -> DigestStatus:
    """
    Check one backup against its digest record.

    Read-only; does not take the lock.

    Raises:
        NotFound: If the backup does not exist
    """
    store = BackupStore(config.backup_destination, config.backup_prefix, config.date_format)
    entry = store.resolve(name)
    status = verify(entry.path)
    if status is DigestStatus.VALID:
        check_readable(entry.path)
    return status


def restore_backup(config: Config, name: str, target_dir: str, verify_digest: bool = True) -> RestoreResult:
    """
    Restore a backup while holding the lock, so it cannot race a running backup.

    Raises:
        LockContention, NotFound, DigestMismatch, RestoreTargetUnreachable
    """
    store = BackupStore(config.backup_destination, config.backup_prefix, config.date_format)

    with LockManager(config.lock_file):
        return RestoreEngine(store).restore(name, target_dir, verify=verify_digest)
