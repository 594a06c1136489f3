"""
Shared pytest fixtures for backupctl tests.

This module provides fixtures for:
- A small source tree with excluded directories
- A Config pointing every state file into tmp_path
- A BackupStore and a factory for pre-built (optionally stamped) backups
- A config file on disk for CLI tests
"""

import io
import logging
import tarfile

import pytest

from backupctl.config import Config
from backupctl.backup.digest import stamp
from backupctl.backup.storage import BackupStore


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers configure_logging() attached so tests don't leak them."""
    yield
    logger = logging.getLogger('backupctl')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory to back up.

    Creates:
    - project/README.md
    - project/src/main.py, project/src/util.py
    - project/empty/ (empty directory)
    - project/.git/HEAD (excluded by default)
    - project/node_modules/pkg/index.js (excluded by default)
    """
    root = tmp_path / 'project'
    root.mkdir()
    (root / 'README.md').write_text('Project readme')

    src = root / 'src'
    src.mkdir()
    (src / 'main.py').write_text('print("hello")\n')
    (src / 'util.py').write_text('VALUE = 1\n')

    (root / 'empty').mkdir()

    git_dir = root / '.git'
    git_dir.mkdir()
    (git_dir / 'HEAD').write_text('ref: refs/heads/main\n')

    pkg = root / 'node_modules' / 'pkg'
    pkg.mkdir(parents=True)
    (pkg / 'index.js').write_text('module.exports = 1;\n')

    return root


@pytest.fixture
def config(tmp_path):
    """Default config with all paths inside tmp_path and no free-space minimum."""
    return Config(
        backup_destination=str(tmp_path / 'Backups'),
        min_space_mb=0,
        snapshot_file=str(tmp_path / 'state' / 'backup.snar'),
        lock_file=str(tmp_path / 'backup.lock'),
        log_file=str(tmp_path / 'logs' / 'backup.log'),
    )


@pytest.fixture
def store(config):
    return BackupStore(config.backup_destination, config.backup_prefix, config.date_format)


@pytest.fixture
def make_backup(store):
    """
    Factory writing a small archive named for the given timestamp.

    Usage: entry = make_backup(datetime(2025, 11, 1, 12, 0), stamped=True)
    """
    def _make(timestamp, incremental=False, stamped=True):
        store.ensure_destination()
        path = store.archive_path_for(timestamp, incremental)

        data = f"backup taken {timestamp.isoformat()}".encode()
        with tarfile.open(path, 'w:gz') as tar:
            info = tarfile.TarInfo('data.txt')
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        if stamped:
            stamp(path)
        return store.entry_from_path(path)

    return _make


@pytest.fixture
def config_file(tmp_path):
    """
    Write a backup.config for CLI tests.

    Returns the file path; extra KEY=value lines can be appended by the test.
    """
    path = tmp_path / 'backup.config'
    path.write_text(
        "# backupctl test configuration\n"
        f"BACKUP_DESTINATION={tmp_path / 'Backups'}\n"
        "MIN_SPACE_MB=0\n"
        f"SNAPSHOT_FILE={tmp_path / 'state' / 'backup.snar'}\n"
        f"LOCK_FILE={tmp_path / 'backup.lock'}\n"
        f"LOG_FILE={tmp_path / 'logs' / 'backup.log'}\n"
    )
    return path
