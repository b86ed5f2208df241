"""
Archive handling for backup snapshots.

Supports multiple formats:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar

Snapshot archives are named {hostname}-backup-{YYYYMMDD-HHMMSS}.{ext} and
contain the staging subtrees databases/, stacks/, secrets/ and optionally
additional/ at the top level.
"""

import os
import re
import tarfile
from pathlib import Path
from typing import Optional

from .context import STAGING_SUBTREES


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


# Format -> (extension, tarfile write mode)
FORMAT_MAP = {
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
}

_EXTENSIONS = tuple(ext for ext, _ in FORMAT_MAP.values())


def build_archive(
    staging_root,
    hostname: str,
    timestamp: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Pack the staging subtrees into one snapshot archive.

    Only subtrees that exist are included, in canonical order. The archive
    is written inside staging_root.

    Args:
        staging_root: Staging directory
        hostname: Local hostname (archive name prefix)
        timestamp: Run timestamp (YYYYMMDD-HHMMSS)
        compression_format: One of FORMAT_MAP

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If nothing was staged or archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMAT_MAP:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_MAP.keys())}"
        )

    staging_root = Path(staging_root)
    subtrees = [name for name in STAGING_SUBTREES if (staging_root / name).is_dir()]
    if not subtrees:
        raise CompressionError(f"Nothing staged for archiving in {staging_root}")

    _, mode = FORMAT_MAP[compression_format]
    archive_path = staging_root / generate_archive_filename(hostname, timestamp, compression_format)

    try:
        with tarfile.open(archive_path, mode) as tar:
            for name in subtrees:
                tar.add(staging_root / name, arcname=name, recursive=True)
        return str(archive_path)
    except Exception as e:
        # Clean up partial archive on failure
        if archive_path.exists():
            archive_path.unlink()
        raise CompressionError(f"Failed to create archive: {e}")


def generate_archive_filename(hostname: str, timestamp: str, compression_format: str = 'tar.gz') -> str:
    """
    Generate the snapshot archive filename.

    Format: {hostname}-backup-{YYYYMMDD-HHMMSS}.{ext}
    """
    extension, _ = FORMAT_MAP.get(compression_format, FORMAT_MAP['tar.gz'])
    return f"{hostname}-backup-{timestamp}.{extension}"


def snapshot_pattern(hostname: str) -> re.Pattern:
    """Regex matching this host's snapshot names; group 1 is the timestamp."""
    extensions = '|'.join(re.escape(ext) for ext in _EXTENSIONS)
    return re.compile(rf'^{re.escape(hostname)}-backup-(\d{{8}}-\d{{6}})\.(?:{extensions})$')


def parse_snapshot_name(name: str, hostname: str) -> Optional[str]:
    """
    Extract the timestamp from a snapshot name.

    Returns:
        The timestamp, or None if name is not a snapshot of hostname
    """
    match = snapshot_pattern(hostname).match(name)
    return match.group(1) if match else None


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def _keep_mode_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """tarfile's 'tar' filter (path safety) without its permission-bit stripping."""
    return tarfile.tar_filter(member, dest_path).replace(mode=member.mode, deep=False)


def extract_archive(archive_path, dest_dir, members_prefix: Optional[str] = None) -> None:
    """
    Unpack a snapshot archive.

    Members with absolute paths or escaping dest_dir are refused. File modes
    (including setgid and group write) are restored as archived.

    Args:
        archive_path: Archive to unpack (compression auto-detected)
        dest_dir: Destination directory
        members_prefix: Only extract members under this top-level entry (e.g. 'secrets')

    Raises:
        CompressionError: If the archive cannot be read or a member is unsafe
    """
    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            members = None
            if members_prefix:
                members = [
                    m for m in tar.getmembers()
                    if m.name == members_prefix or m.name.startswith(f'{members_prefix}/')
                ]
            tar.extractall(dest_dir, members=members, filter=_keep_mode_filter)
    except (tarfile.TarError, OSError) as e:
        raise CompressionError(f"Failed to extract {os.path.basename(str(archive_path))}: {e}")
