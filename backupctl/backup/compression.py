"""
Archive handling for backup snapshots.

Archives are gzip-compressed tarballs named
'<prefix>-<timestamp>.tar.gz' (full) or '<prefix>-<timestamp>-inc.tar.gz'
(incremental). This module builds and extracts them and converts between
names and (timestamp, kind) pairs.
"""

import os
import zlib
import tarfile
from datetime import datetime
from typing import List, Optional, Tuple

from backupctl.errors import ArchiveCreationFailed, DigestMismatch, RestoreTargetUnreachable
from .sources import SourceEntry


ARCHIVE_EXTENSION = '.tar.gz'
INCREMENTAL_TAG = '-inc'

KIND_FULL = 'full'
KIND_INCREMENTAL = 'incremental'


def create_archive(
    source_root: str,
    entries: List[SourceEntry],
    archive_root: str,
    archive_path: str
) -> str:
    """
    Create a gzip-compressed tar archive from scanned source entries.

    The source root itself is stored as '<archive_root>' and every entry is
    added non-recursively under '<archive_root>/<relative path>', so the
    caller's exclusion and incremental selection is exactly what ends up in
    the archive.

    Args:
        source_root: Source directory the entries were scanned from
        entries: Source entries to include (parents before children)
        archive_root: Top-level directory name inside the archive
        archive_path: Output archive path (must not exist yet)

    Returns:
        Full path to the created archive file

    Raises:
        ArchiveCreationFailed: If the archive exists already or cannot be written
    """
    try:
        # 'x' mode refuses to overwrite an existing archive
        tar = tarfile.open(archive_path, 'x:gz')
    except FileExistsError:
        raise ArchiveCreationFailed(f"Archive already exists: {archive_path}")
    except OSError as e:
        raise ArchiveCreationFailed(f"Failed to create archive: {e}") from e

    try:
        with tar:
            tar.add(source_root, arcname=archive_root, recursive=False)
            for entry in entries:
                tar.add(entry.path, arcname=f"{archive_root}/{entry.relative_path}", recursive=False)
    except Exception as e:
        _remove_partial(archive_path)
        raise ArchiveCreationFailed(f"Failed to create archive: {e}") from e
    except BaseException:
        _remove_partial(archive_path)
        raise

    return archive_path


def _remove_partial(archive_path: str):
    if os.path.exists(archive_path):
        os.remove(archive_path)


# Raised by extraction filters on interpreters that have them
FILTER_ERRORS = (tarfile.FilterError,) if hasattr(tarfile, 'FilterError') else ()


def _check_member_names(members: List[tarfile.TarInfo]):
    """Reject members with absolute names or '..' components."""
    for member in members:
        name = member.name.replace('\\', '/')
        if os.path.isabs(name) or '..' in name.split('/'):
            raise RestoreTargetUnreachable(f"Archive member '{member.name}' would extract outside the target")


def extract_archive(archive_path: str, target_dir: str) -> int:
    """
    Extract an archive's full contents into a directory.

    Existing files are overwritten without confirmation. Member names are
    checked before anything is written. Where the running interpreter
    supports it, tarfile's 'tar' filter is applied as well; unlike 'data'
    it keeps symlinks that point outside the tree, which backups record
    as-is.

    Args:
        archive_path: Archive to extract
        target_dir: Existing directory to extract into

    Returns:
        Number of members extracted

    Raises:
        DigestMismatch: If the archive is corrupt or unreadable
        RestoreTargetUnreachable: If the target cannot be written, or a
            member would land outside it
    """
    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()
            _check_member_names(members)
            if hasattr(tarfile, 'tar_filter'):
                tar.extractall(target_dir, members=members, filter='tar')
            else:
                tar.extractall(target_dir, members=members)
        return len(members)
    except FILTER_ERRORS as e:
        raise RestoreTargetUnreachable(f"Refused to extract {os.path.basename(archive_path)}: {e}") from e
    except (tarfile.TarError, zlib.error, EOFError) as e:
        raise DigestMismatch(f"Archive {os.path.basename(archive_path)} could not be extracted: {e}") from e
    except OSError as e:
        raise RestoreTargetUnreachable(f"Failed to extract into {target_dir}: {e}") from e


def generate_archive_filename(
    prefix: str,
    timestamp: datetime,
    date_format: str,
    incremental: bool = False
) -> str:
    """
    Generate a standardized archive filename.

    Format: {prefix}-{timestamp}[-inc].tar.gz

    Args:
        prefix: Configured name prefix
        timestamp: Creation time
        date_format: strftime format for the timestamp part
        incremental: Tag the name as an incremental backup

    Returns:
        Filename (without path)
    """
    tag = INCREMENTAL_TAG if incremental else ''
    return f"{prefix}-{timestamp.strftime(date_format)}{tag}{ARCHIVE_EXTENSION}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip the .tar.gz extension from filename.

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    if filename.endswith(ARCHIVE_EXTENSION):
        return filename[:-len(ARCHIVE_EXTENSION)]
    return os.path.splitext(filename)[0]


def parse_archive_filename(
    filename: str,
    prefix: str,
    date_format: str
) -> Optional[Tuple[datetime, str]]:
    """
    Recover the creation time and kind from an archive name.

    Args:
        filename: Archive filename (without path)
        prefix: Configured name prefix
        date_format: strftime format used when the name was generated

    Returns:
        (timestamp, kind) tuple, or None if the name is not one of ours
    """
    if not filename.endswith(ARCHIVE_EXTENSION) or not filename.startswith(f"{prefix}-"):
        return None

    stem = strip_archive_extension(filename)[len(prefix) + 1:]
    kind = KIND_FULL
    if stem.endswith(INCREMENTAL_TAG):
        stem = stem[:-len(INCREMENTAL_TAG)]
        kind = KIND_INCREMENTAL

    try:
        return datetime.strptime(stem, date_format), kind
    except ValueError:
        return None


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveCreationFailed: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveCreationFailed(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveCreationFailed(f"Failed to get archive size: {e}") from e
