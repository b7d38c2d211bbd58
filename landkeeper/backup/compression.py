"""
Archive codec for backup artifacts.

Packs a staging directory into a single gzip-compressed tar file and unpacks
it again. Extraction normalizes the wrapper directory that compression
introduces, so callers always find artifact contents directly under the
target directory.
"""

import os
import shutil
import tarfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional


ARCHIVE_EXTENSION = '.tar.gz'
BACKUP_NAME_PREFIX = 'backup-'


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


class ArchiveIOError(CompressionError):
    """Raised when a source directory or archive file cannot be accessed."""
    pass


class IntegrityError(CompressionError):
    """Raised when an archive is empty or implausible."""
    pass


def compress_folder(source_dir: str, output_file: str) -> str:
    """
    Compress a directory into a tar.gz archive.

    The archive contains the basename of source_dir as its only top-level
    entry.

    Args:
        source_dir: Directory to compress
        output_file: Path of the archive to create

    Returns:
        Path to the created archive

    Raises:
        ArchiveIOError: If source_dir does not exist
        IntegrityError: If the written archive is empty
        CompressionError: If writing the archive fails
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveIOError(f"Source directory not found: {source_dir}")

    output = Path(output_file)
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveIOError(f"Cannot create output directory {output.parent}: {e}")

    try:
        with tarfile.open(output, 'w:gz') as tar:
            tar.add(source, arcname=source.name, recursive=True)
    except Exception as e:
        # Clean up partial archive on failure
        if output.exists():
            try:
                output.unlink()
            except OSError:
                pass
        raise CompressionError(f"Compression of {source_dir} into {output_file} failed: {e}")

    if output.stat().st_size == 0:
        raise IntegrityError(f"Compressed file is empty: {output_file}")

    return str(output)


def extract_archive(archive_file: str, target_dir: str) -> str:
    """
    Extract a tar.gz archive and normalize its top-level structure.

    The archive is checked before the target directory is created, so a
    missing or empty archive leaves no trace on disk.

    Args:
        archive_file: Archive to extract
        target_dir: Directory to extract into (created if absent)

    Returns:
        Path to the target directory

    Raises:
        ArchiveIOError: If the archive does not exist
        IntegrityError: If the archive is zero-length
        CompressionError: If the archive cannot be read
    """
    archive = Path(archive_file)
    if not archive.is_file():
        raise ArchiveIOError(f"Backup file not found: {archive_file}")

    if archive.stat().st_size == 0:
        raise IntegrityError(f"Backup file is empty: {archive_file}")

    target = Path(target_dir)
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveIOError(f"Cannot create extraction directory {target_dir}: {e}")

    try:
        with tarfile.open(archive, 'r:gz') as tar:
            # 'data' filter keeps relative paths but drops ownership and special mode bits
            tar.extractall(target, filter='data')
    except (tarfile.TarError, OSError, EOFError) as e:
        raise CompressionError(f"Extraction of {archive_file} into {target_dir} failed: {e}")

    normalize_extracted_structure(str(target))
    return str(target)


def normalize_extracted_structure(target_dir: str) -> bool:
    """
    Hoist the contents of a single wrapping directory up one level.

    Does nothing unless target_dir holds exactly one entry and that entry
    is a directory.

    Args:
        target_dir: Directory to normalize

    Returns:
        True if a wrapper directory was removed
    """
    target = Path(target_dir)
    items = list(target.iterdir())

    if len(items) != 1 or not items[0].is_dir() or items[0].is_symlink():
        return False

    # Rename first so a child named like the wrapper cannot collide with it
    wrapper = items[0].rename(target / f".unwrap-{uuid.uuid4().hex}")

    for child in wrapper.iterdir():
        shutil.move(str(child), str(target / child.name))

    wrapper.rmdir()
    return True


def generate_backup_name(now: Optional[datetime] = None) -> str:
    """
    Generate an artifact name from a timestamp.

    Format: backup-{YYYYMMDD-HHMMSS}, which sorts chronologically.

    Args:
        now: Timestamp to use (default: current local time)

    Returns:
        Backup name without extension
    """
    now = now or datetime.now()
    return f"{BACKUP_NAME_PREFIX}{now.strftime('%Y%m%d-%H%M%S')}"


def strip_archive_extension(filename: str) -> str:
    """Strip the .tar.gz extension from an artifact filename."""
    if filename.endswith(ARCHIVE_EXTENSION):
        return filename[:-len(ARCHIVE_EXTENSION)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveIOError: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveIOError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveIOError(f"Failed to get archive size of {archive_path}: {e}")


def format_bytes(size: int) -> str:
    """Format a byte count for humans, e.g. '1.5 KB'."""
    units = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    if size <= 0:
        return '0 Bytes'
    index = 0
    while size >= 1024 ** (index + 1) and index < len(units) - 1:
        index += 1
    value = round(size / 1024 ** index, 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[index]}"
