"""
Temporary file handling for imports

An imported collection database has to be written to disk before SQLite can
open it. ``temporary_collection`` scopes that file to one import and removes
it on every exit path. ``cleanup_old_files`` sweeps files left behind by a
process that died mid-import.
"""

import glob
import logging
import os
import tempfile
import time
import uuid
from contextlib import contextmanager

from errors import ResourceError

logger = logging.getLogger(__name__)

TMP_PREFIX = 'anki-import-'
TMP_PATTERN = f'{TMP_PREFIX}*.anki2'


def tmp_dir():
    return tempfile.gettempdir()


@contextmanager
def temporary_collection(data: bytes, directory=None):
    """
    Writes ``data`` to a uniquely named temp file and yields its path.

    The file is deleted when the block exits, whether it completed or raised.

    Raises:
        ResourceError: If the temp file cannot be written
    """
    path = os.path.join(directory or tmp_dir(), f'{TMP_PREFIX}{uuid.uuid4().hex}.anki2')
    try:
        with open(path, 'wb') as f:
            f.write(data)
    except OSError as e:
        _remove(path)
        raise ResourceError(f"Could not write temporary collection file: {e}")

    logger.debug(f"Wrote temporary collection {path} ({len(data)} bytes)")
    try:
        yield path
    finally:
        _remove(path)


def _remove(path):
    try:
        os.remove(path)
        logger.debug(f"Removed temporary collection {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to clean up temp file {path}: {e}")


def list_tmp_files(pattern=TMP_PATTERN, directory=None):
    """
    List temp files matching a pattern.

    Returns:
        list: Dicts with path, size, age (seconds) and modified time
    """
    files = []
    for filepath in glob.glob(os.path.join(directory or tmp_dir(), pattern)):
        try:
            stat = os.stat(filepath)
        except OSError:
            continue  # deleted concurrently
        files.append({
            'path': filepath,
            'size': stat.st_size,
            'age': time.time() - stat.st_mtime,
            'modified': stat.st_mtime,
        })
    return files


def cleanup_old_files(max_age_seconds=3600, pattern=TMP_PATTERN, directory=None, dry_run=False):
    """
    Delete leftover import files older than max_age_seconds.

    Returns:
        dict: deleted_count, deleted_size, kept_count
    """
    deleted_count = 0
    deleted_size = 0
    kept_count = 0

    for file_info in list_tmp_files(pattern, directory):
        if file_info['age'] <= max_age_seconds:
            kept_count += 1
            continue
        if not dry_run:
            _remove(file_info['path'])
        deleted_count += 1
        deleted_size += file_info['size']

    if deleted_count:
        logger.info(f"Temp cleanup: removed {deleted_count} stale import files ({deleted_size / 1024:.1f} KB)")
    return {'deleted_count': deleted_count, 'deleted_size': deleted_size, 'kept_count': kept_count}
