"""
Temporary collection files: scoped removal and stale-file sweeping.
"""

import os
import time

import pytest

from errors import ResourceError
from tmp_cleanup import TMP_PREFIX, cleanup_old_files, list_tmp_files, temporary_collection


def test_file_exists_only_inside_block(tmp_path):
    with temporary_collection(b'sqlite bytes', directory=str(tmp_path)) as path:
        assert os.path.basename(path).startswith(TMP_PREFIX)
        with open(path, 'rb') as f:
            assert f.read() == b'sqlite bytes'

    assert not os.path.exists(path)


def test_file_removed_when_block_raises(tmp_path):
    with pytest.raises(RuntimeError):
        with temporary_collection(b'x', directory=str(tmp_path)) as path:
            raise RuntimeError('boom')

    assert not os.path.exists(path)
    assert os.listdir(tmp_path) == []


def test_unwritable_directory(tmp_path):
    with pytest.raises(ResourceError):
        with temporary_collection(b'x', directory=str(tmp_path / 'missing')):
            pass


def _leftover(tmp_path, name, age_seconds):
    path = tmp_path / name
    path.write_bytes(b'0' * 2048)
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))
    return path


def test_cleanup_removes_only_stale_files(tmp_path):
    stale = _leftover(tmp_path, f'{TMP_PREFIX}old.anki2', 7200)
    fresh = _leftover(tmp_path, f'{TMP_PREFIX}new.anki2', 10)
    other = _leftover(tmp_path, 'unrelated.anki2', 7200)

    result = cleanup_old_files(max_age_seconds=3600, directory=str(tmp_path))

    assert result == {'deleted_count': 1, 'deleted_size': 2048, 'kept_count': 1}
    assert not stale.exists()
    assert fresh.exists()
    assert other.exists()


def test_cleanup_dry_run_keeps_files(tmp_path):
    stale = _leftover(tmp_path, f'{TMP_PREFIX}old.anki2', 7200)

    result = cleanup_old_files(max_age_seconds=3600, directory=str(tmp_path), dry_run=True)

    assert result['deleted_count'] == 1
    assert stale.exists()


def test_list_tmp_files(tmp_path):
    _leftover(tmp_path, f'{TMP_PREFIX}a.anki2', 100)

    files = list_tmp_files(directory=str(tmp_path))

    assert len(files) == 1
    assert files[0]['size'] == 2048
    assert files[0]['age'] >= 99
