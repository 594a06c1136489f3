"""
Unit tests for the archive builder (backupctl/backup/builder.py).

Tests full and incremental builds, dry-run planning and failure cleanup.
"""

import os
import logging
import tarfile
import dataclasses
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from backupctl.backup.builder import ArchiveBuilder
from backupctl.backup.compression import KIND_FULL, KIND_INCREMENTAL
from backupctl.backup.digest import DigestStatus, verify
from backupctl.errors import ArchiveCreationFailed, InsufficientSpace, SourceNotFound


def _tree_state(root):
    """Every path under root with its size and mtime."""
    state = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            st = os.lstat(path)
            state[path] = (st.st_size, st.st_mtime_ns)
    return state


def _member_names(archive_path):
    with tarfile.open(archive_path, 'r:gz') as tar:
        return set(tar.getnames())


class TestCreateFull:
    """Test full archive creation."""

    @freeze_time("2025-11-10 12:00:00")
    def test_create_full(self, config, source_tree):
        builder = ArchiveBuilder(config)
        result = builder.create_full(str(source_tree))

        assert result.name == 'backup-2025-11-10-120000.tar.gz'
        assert result.kind == KIND_FULL
        assert not result.dry_run
        assert os.path.exists(result.archive_path)
        assert result.size_bytes == os.path.getsize(result.archive_path)
        assert result.entry.is_verified
        assert verify(result.archive_path) is DigestStatus.VALID

    @freeze_time("2025-11-10 12:00:00")
    def test_create_full_uses_config_excludes(self, config, source_tree):
        result = ArchiveBuilder(config).create_full(str(source_tree))
        names = _member_names(result.archive_path)

        assert 'project/src/main.py' in names
        assert 'project/.git' not in names
        assert 'project/node_modules' not in names

    @freeze_time("2025-11-10 12:00:00")
    def test_create_full_explicit_excludes(self, config, source_tree):
        result = ArchiveBuilder(config).create_full(str(source_tree), exclude_patterns=['*.py'])
        names = _member_names(result.archive_path)

        assert 'project/.git/HEAD' in names
        assert 'project/src/main.py' not in names

    def test_missing_source(self, config, tmp_path):
        with pytest.raises(SourceNotFound):
            ArchiveBuilder(config).create_full(str(tmp_path / 'missing'))

        assert not os.path.exists(config.backup_destination)

    def test_insufficient_space(self, config, source_tree):
        config = dataclasses.replace(config, min_space_mb=10 ** 12)

        with pytest.raises(InsufficientSpace) as exc_info:
            ArchiveBuilder(config).create_full(str(source_tree))

        assert 'Not enough disk space!' in str(exc_info.value)
        assert not os.path.exists(config.backup_destination)

    def test_space_check_can_be_skipped(self, config, source_tree):
        config = dataclasses.replace(config, min_space_mb=10 ** 12)

        result = ArchiveBuilder(config).create_full(str(source_tree), check_space=False)

        assert os.path.exists(result.archive_path)

    @freeze_time("2025-11-10 12:00:00")
    def test_same_second_twice(self, config, source_tree):
        builder = ArchiveBuilder(config)
        builder.create_full(str(source_tree))

        with pytest.raises(ArchiveCreationFailed):
            builder.create_full(str(source_tree))

    @freeze_time("2025-11-10 12:00:00")
    def test_digest_failure_removes_archive(self, config, source_tree):
        with patch('backupctl.backup.builder.stamp', side_effect=ArchiveCreationFailed("disk full")):
            with pytest.raises(ArchiveCreationFailed):
                ArchiveBuilder(config).create_full(str(source_tree))

        assert os.listdir(config.backup_destination) == []


class TestCreateIncremental:
    """Test incremental archive creation."""

    def test_first_incremental_includes_everything(self, config, source_tree):
        with freeze_time("2025-11-10 12:00:00"):
            result = ArchiveBuilder(config).create_incremental(str(source_tree))

        assert result.name == 'backup-2025-11-10-120000-inc.tar.gz'
        assert result.kind == KIND_INCREMENTAL
        assert 'project/README.md' in _member_names(result.archive_path)
        assert os.path.exists(config.snapshot_file)

    def test_second_incremental_only_changes(self, config, source_tree):
        builder = ArchiveBuilder(config)
        with freeze_time("2025-11-10 12:00:00"):
            builder.create_incremental(str(source_tree))

        (source_tree / 'src' / 'main.py').write_text('print("changed and longer")\n')

        with freeze_time("2025-11-11 12:00:00"):
            result = builder.create_incremental(str(source_tree))

        names = _member_names(result.archive_path)
        assert 'project/src/main.py' in names
        assert 'project/README.md' not in names
        assert 'project/src/util.py' not in names
        assert 'project/empty' in names

    def test_incremental_uses_explicit_state_path(self, config, source_tree, tmp_path):
        state_path = tmp_path / 'custom.snar'

        with freeze_time("2025-11-10 12:00:00"):
            ArchiveBuilder(config).create_incremental(str(source_tree), snapshot_state_path=str(state_path))

        assert state_path.exists()
        assert not os.path.exists(config.snapshot_file)

    def test_state_not_saved_when_archive_fails(self, config, source_tree):
        with freeze_time("2025-11-10 12:00:00"):
            with patch('backupctl.backup.builder.stamp', side_effect=ArchiveCreationFailed("disk full")):
                with pytest.raises(ArchiveCreationFailed):
                    ArchiveBuilder(config).create_incremental(str(source_tree))

        assert not os.path.exists(config.snapshot_file)


class TestDryRun:
    """Test dry-run planning."""

    @pytest.mark.parametrize("incremental", [False, True])
    def test_dry_run_writes_nothing(self, config, source_tree, tmp_path, caplog, incremental):
        caplog.set_level(logging.INFO)
        before = _tree_state(tmp_path)

        builder = ArchiveBuilder(config)
        if incremental:
            result = builder.create_incremental(str(source_tree), dry_run=True)
        else:
            result = builder.create_full(str(source_tree), dry_run=True)

        assert result.dry_run
        assert result.entry is None
        assert result.file_count > 0
        assert _tree_state(tmp_path) == before
        assert '[DRY-RUN] Would create' in caplog.text
        assert result.describe().startswith('Would create')
