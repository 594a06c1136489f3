"""
Unit tests for restore (backupctl/backup/restore.py and restore_backup).
"""

import os

import pytest
from freezegun import freeze_time

from backupctl.backup.builder import ArchiveBuilder
from backupctl.backup.digest import digest_path_for
from backupctl.backup.executor import restore_backup
from backupctl.backup.lock import LockManager
from backupctl.backup.restore import RestoreEngine
from backupctl.errors import (
    DigestMismatch,
    LockContention,
    NotFound,
    RestoreTargetUnreachable
)


def _relative_files(root, excluded=()):
    files = set()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in excluded]
        for name in filenames:
            files.add(os.path.relpath(os.path.join(dirpath, name), root))
    return files


@pytest.fixture
def full_backup(config, source_tree):
    with freeze_time("2025-11-10 12:00:00"):
        return ArchiveBuilder(config).create_full(str(source_tree))


class TestRestoreEngine:
    """Test RestoreEngine.restore."""

    def test_restore_reproduces_source(self, store, source_tree, full_backup, tmp_path):
        target = tmp_path / 'restore'

        result = RestoreEngine(store).restore(full_backup.name, str(target))

        assert result.verified
        assert result.member_count > 0
        assert _relative_files(target / 'project') == _relative_files(source_tree, ('.git', 'node_modules'))
        assert (target / 'project' / 'empty').is_dir()

    def test_restore_keeps_absolute_symlink(self, config, store, source_tree, tmp_path):
        outside = tmp_path / 'outside.txt'
        outside.write_text('elsewhere')
        os.symlink(str(outside), str(source_tree / 'hostlink'))
        with freeze_time("2025-11-10 12:00:00"):
            backup = ArchiveBuilder(config).create_full(str(source_tree))
        target = tmp_path / 'restore'

        RestoreEngine(store).restore(backup.name, str(target))

        restored = target / 'project' / 'hostlink'
        assert restored.is_symlink()
        assert os.readlink(str(restored)) == str(outside)
        assert _relative_files(target / 'project') == _relative_files(source_tree, ('.git', 'node_modules'))

    def test_restore_overwrites_existing_files(self, store, full_backup, tmp_path):
        target = tmp_path / 'restore'
        (target / 'project').mkdir(parents=True)
        (target / 'project' / 'README.md').write_text('stale')

        RestoreEngine(store).restore(full_backup.name, str(target))

        assert (target / 'project' / 'README.md').read_text() == 'Project readme'

    def test_restore_unknown_name(self, store, full_backup, tmp_path):
        with pytest.raises(NotFound):
            RestoreEngine(store).restore('backup-2000-01-01-000000.tar.gz', str(tmp_path / 'restore'))

    def test_restore_rejects_corrupt_archive(self, store, full_backup, tmp_path):
        with open(full_backup.archive_path, 'ab') as f:
            f.write(b'garbage')
        target = tmp_path / 'restore'

        with pytest.raises(DigestMismatch):
            RestoreEngine(store).restore(full_backup.name, str(target))

        assert not target.exists()

    def test_restore_rejects_unstamped_archive(self, store, full_backup, tmp_path):
        os.remove(digest_path_for(full_backup.archive_path))

        with pytest.raises(DigestMismatch):
            RestoreEngine(store).restore(full_backup.name, str(tmp_path / 'restore'))

    def test_restore_without_verification(self, store, full_backup, tmp_path):
        with open(digest_path_for(full_backup.archive_path), 'w') as f:
            f.write('0' * 64 + '\n')
        target = tmp_path / 'restore'

        result = RestoreEngine(store).restore(full_backup.name, str(target), verify=False)

        assert not result.verified
        assert (target / 'project' / 'README.md').exists()

    def test_restore_target_is_a_file(self, store, full_backup, tmp_path):
        target = tmp_path / 'occupied'
        target.write_text('not a directory')

        with pytest.raises(RestoreTargetUnreachable):
            RestoreEngine(store).restore(full_backup.name, str(target))


class TestRestoreBackup:
    """Test restore_backup entry point."""

    def test_restore_backup(self, config, full_backup, tmp_path):
        target = tmp_path / 'restore'

        result = restore_backup(config, full_backup.name, str(target))

        assert result.target_dir == str(target)
        assert not os.path.exists(config.lock_file)

    def test_restore_refuses_while_locked(self, config, full_backup, tmp_path):
        """Test restore refuses to run while a backup holds the lock."""
        with LockManager(config.lock_file):
            with pytest.raises(LockContention):
                restore_backup(config, full_backup.name, str(tmp_path / 'restore'))

        assert not (tmp_path / 'restore').exists()
