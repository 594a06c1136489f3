"""
Unit tests for incremental snapshot state (backupctl/backup/snapshot.py).
"""

import os
import json

import pytest

from backupctl.backup.snapshot import SnapshotState
from backupctl.backup.sources import LocalSource
from backupctl.errors import ArchiveCreationFailed


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / 'state' / 'backup.snar')


def _scan(root):
    return LocalSource(str(root), ['.git', 'node_modules']).collect()


class TestSnapshotState:
    """Test loading, diffing and saving state."""

    def test_load_missing_is_empty(self, state_path):
        state = SnapshotState.load(state_path)

        assert state.files == {}
        assert not os.path.exists(state_path)

    def test_empty_state_selects_everything(self, source_tree, state_path):
        entries = _scan(source_tree)

        assert SnapshotState.load(state_path).changed_entries(entries) == entries

    def test_save_and_load(self, source_tree, state_path):
        entries = _scan(source_tree)
        SnapshotState(state_path).updated(entries).save()

        loaded = SnapshotState.load(state_path)

        assert set(loaded.files) == {e.relative_path for e in entries}
        with open(state_path) as f:
            assert json.load(f)['version'] == 1

    def test_save_leaves_no_temp_files(self, tmp_path, state_path):
        SnapshotState(state_path, {'a': {'size': 1}}).save()

        assert os.listdir(os.path.dirname(state_path)) == ['backup.snar']

    def test_only_changed_files_selected(self, source_tree, state_path):
        SnapshotState(state_path).updated(_scan(source_tree)).save()
        (source_tree / 'src' / 'main.py').write_text('print("changed and longer")\n')
        (source_tree / 'NEW.txt').write_text('new file')

        state = SnapshotState.load(state_path)
        changed = state.changed_entries(_scan(source_tree))
        files = {e.relative_path for e in changed if not e.is_dir}
        dirs = {e.relative_path for e in changed if e.is_dir}

        assert files == {'src/main.py', 'NEW.txt'}
        # Directories are always carried so the layout survives a restore
        assert dirs == {'src', 'empty'}

    def test_unchanged_tree_selects_only_directories(self, source_tree, state_path):
        SnapshotState(state_path).updated(_scan(source_tree)).save()

        changed = SnapshotState.load(state_path).changed_entries(_scan(source_tree))

        assert all(e.is_dir for e in changed)

    def test_corrupt_state(self, state_path):
        os.makedirs(os.path.dirname(state_path))
        with open(state_path, 'w') as f:
            f.write('{not json')

        with pytest.raises(ArchiveCreationFailed):
            SnapshotState.load(state_path)

    def test_unexpected_layout(self, state_path):
        os.makedirs(os.path.dirname(state_path))
        with open(state_path, 'w') as f:
            json.dump(['a', 'b'], f)

        with pytest.raises(ArchiveCreationFailed):
            SnapshotState.load(state_path)
