"""
Single-host mutual exclusion for backup runs.

The lock is a marker file holding the owner's PID. It is linked into place
atomically so two processes can never both believe they own it.
A marker left behind by a dead process is treated as stale; it is renamed
aside before deletion so a live marker linked in meanwhile is never removed.
"""

import os
import logging
from typing import Optional

from backupctl.errors import LockContention


logger = logging.getLogger(__name__)


def is_process_alive(pid: int) -> bool:
    """Check if a process with given PID is still alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 = check existence only
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user
        return True


def _read_pid(path: str) -> Optional[int]:
    try:
        with open(path, 'r') as f:
            content = f.read().strip()
    except FileNotFoundError:
        return None

    try:
        return int(content)
    except ValueError:
        return None


class LockManager:
    """
    PID-tagged lock file.

    Usage::

        with LockManager('/tmp/backup.lock'):
            ...  # lock is released on every exit path

    release() only removes a marker this instance created, so a process
    that lost the race never deletes the winner's lock.
    """

    def __init__(self, lock_path: str, pid: Optional[int] = None):
        """
        Args:
            lock_path: Path of the lock marker file
            pid: PID to record (defaults to the current process)
        """
        self.lock_path = lock_path
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        """
        Atomically create the marker. Returns False if it already exists.

        The PID is written to a private file first and hard-linked into
        place, so the marker is never observable without its owner.
        """
        parent = os.path.dirname(os.path.abspath(self.lock_path))
        os.makedirs(parent, exist_ok=True)

        tmp_path = f"{self.lock_path}.{self.pid}.tmp"
        fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o644)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(f"{self.pid}\n")
            os.link(tmp_path, self.lock_path)
        except FileExistsError:
            return False
        finally:
            os.remove(tmp_path)
        return True

    def read_owner(self) -> Optional[int]:
        """
        Read the PID recorded in the marker.

        Returns:
            The PID, or None if the marker is absent or unparsable
        """
        return _read_pid(self.lock_path)

    def acquire(self):
        """
        Acquire the lock.

        Raises:
            LockContention: If a live process holds the lock, or another
                process wins the race after a stale lock was cleared
        """
        if self._held:
            return

        if self._try_create():
            self._held = True
            logger.debug(f"Lock acquired: {self.lock_path} (pid {self.pid})")
            return

        owner = self.read_owner()
        if owner is not None and is_process_alive(owner):
            raise LockContention(
                f"Another backup process is already running (pid {owner}, lock {self.lock_path})"
            )

        logger.warning(f"Removing stale lock {self.lock_path} (recorded pid: {owner})")
        self._discard_stale(owner)

        # Retry exactly once; whoever creates the marker first wins
        if not self._try_create():
            raise LockContention(f"Lost race for lock {self.lock_path} after clearing stale lock")

        self._held = True
        logger.debug(f"Lock acquired: {self.lock_path} (pid {self.pid})")

    def _discard_stale(self, owner: Optional[int]):
        """
        Move the stale marker aside and delete it.

        The rename claims whatever marker is in place at that instant. If it
        no longer records the dead owner, another process replaced it after
        it was inspected, so it is linked back and the lock is left alone.

        Raises:
            LockContention: If the claimed marker belongs to someone else
        """
        claimed_path = f"{self.lock_path}.{self.pid}.stale"
        try:
            os.rename(self.lock_path, claimed_path)
        except FileNotFoundError:
            return

        try:
            claimed = _read_pid(claimed_path)
            if claimed != owner:
                try:
                    os.link(claimed_path, self.lock_path)
                except FileExistsError:
                    pass
                raise LockContention(
                    f"Another backup process is already running (pid {claimed}, lock {self.lock_path})"
                )
        finally:
            os.remove(claimed_path)

    def release(self):
        """Release the lock. Safe to call any number of times."""
        if not self._held:
            return

        self._held = False
        try:
            os.remove(self.lock_path)
            logger.debug(f"Lock released: {self.lock_path}")
        except FileNotFoundError:
            pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
