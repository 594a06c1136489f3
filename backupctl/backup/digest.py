"""
Content digests for backup archives.

Each archive gets a sibling '<archive>.sha256' record in sha256sum format,
so the records can also be checked with `sha256sum -c`.
"""

import os
import zlib
import hashlib
import tarfile
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from backupctl.errors import ArchiveCreationFailed, DigestMismatch


logger = logging.getLogger(__name__)

DIGEST_SUFFIX = '.sha256'
CHUNK_SIZE = 1024 * 1024


class DigestStatus(Enum):
    VALID = 'valid'
    MISMATCH = 'mismatch'
    MISSING = 'missing'


@dataclass(frozen=True)
class DigestRecord:
    archive_path: str
    record_path: str
    hexdigest: str


def digest_path_for(archive_path: str) -> str:
    """Return the sidecar record path for an archive."""
    return f"{archive_path}{DIGEST_SUFFIX}"


def compute_digest(path: str) -> str:
    """
    Compute the SHA-256 of a file's raw bytes.

    Args:
        path: File to hash

    Returns:
        Lower-case hex digest
    """
    sha = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            sha.update(chunk)
    return sha.hexdigest()


def read_digest(archive_path: str) -> Optional[str]:
    """
    Read the recorded digest for an archive.

    Returns:
        Hex digest, or None if there is no (usable) record
    """
    record_path = digest_path_for(archive_path)
    try:
        with open(record_path, 'r', encoding='utf-8') as f:
            line = f.readline().strip()
    except FileNotFoundError:
        return None

    if not line:
        return None
    return line.split()[0].lower()


def stamp(archive_path: str) -> DigestRecord:
    """
    Compute an archive's digest and persist it next to the archive.

    The record is written to a temporary file and moved into place so a
    reader never sees a half-written record.

    Args:
        archive_path: Path to the archive

    Returns:
        DigestRecord describing the written sidecar

    Raises:
        ArchiveCreationFailed: If the archive cannot be read or the record written
    """
    record_path = digest_path_for(archive_path)
    tmp_path = f"{record_path}.tmp"

    try:
        hexdigest = compute_digest(archive_path)
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(f"{hexdigest}  {os.path.basename(archive_path)}\n")
            os.replace(tmp_path, record_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
    except OSError as e:
        raise ArchiveCreationFailed(f"Failed to write digest for {archive_path}: {e}") from e

    logger.info(f"Digest recorded: {os.path.basename(record_path)} ({hexdigest[:12]}...)")
    return DigestRecord(archive_path=archive_path, record_path=record_path, hexdigest=hexdigest)


def verify(archive_path: str) -> DigestStatus:
    """
    Recompute an archive's digest and compare it with its record.

    Args:
        archive_path: Path to the archive

    Returns:
        DigestStatus.VALID, MISMATCH or MISSING. A missing archive with a
        record present is reported as MISMATCH.
    """
    expected = read_digest(archive_path)
    if expected is None:
        return DigestStatus.MISSING

    try:
        actual = compute_digest(archive_path)
    except FileNotFoundError:
        return DigestStatus.MISMATCH

    if actual != expected:
        return DigestStatus.MISMATCH
    return DigestStatus.VALID


def require_valid(archive_path: str):
    """
    Verify an archive and raise unless its digest matches.

    Raises:
        DigestMismatch: If the record is missing or does not match
    """
    status = verify(archive_path)
    name = os.path.basename(archive_path)

    if status is DigestStatus.MISSING:
        raise DigestMismatch(f"No digest record for {name}; archive is unverified")
    if status is DigestStatus.MISMATCH:
        raise DigestMismatch(f"Digest mismatch for {name}; archive is corrupt")

    logger.info(f"Digest verified: {name}")


def check_readable(archive_path: str) -> int:
    """
    Read every member of a tar archive to prove it decompresses cleanly.

    Returns:
        Number of members in the archive

    Raises:
        DigestMismatch: If the archive cannot be read to the end
    """
    count = 0
    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            for member in tar:
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        for _ in iter(lambda: extracted.read(CHUNK_SIZE), b''):
                            pass
                count += 1
    except (tarfile.TarError, zlib.error, OSError, EOFError) as e:
        raise DigestMismatch(f"Archive {os.path.basename(archive_path)} is unreadable: {e}") from e

    return count
