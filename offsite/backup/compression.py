"""
Archive handling for backups.

Backups are one gzip-compressed tar holding every configured directory
(stored under its base name) plus the database dump.
"""

import os
import re
import zlib
import tarfile
import logging
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from offsite.errors import ArchiveError
from offsite.utils.crypto import ENCRYPTED_EXTENSION


logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = 'backup_'
ARCHIVE_EXTENSION = 'tar.gz'
DUMP_PREFIX = 'db_backup_'
DUMP_EXTENSION = 'sql'

REMOTE_NAME_PATTERN = re.compile(
    r"^" + re.escape(ARCHIVE_PREFIX) + r"(\d{4}-\d{2}-\d{2})\." + re.escape(ARCHIVE_EXTENSION)
    + r"\." + re.escape(ENCRYPTED_EXTENSION) + r"$"
)


def generate_archive_filename(day: Optional[date] = None) -> str:
    """
    Generate the archive filename for a calendar day.

    Format: backup_{YYYY-MM-DD}.tar.gz

    One name per day, so a second run on the same day replaces the first.
    """
    day = day or date.today()
    return f"{ARCHIVE_PREFIX}{day.isoformat()}.{ARCHIVE_EXTENSION}"


def generate_dump_filename(day: Optional[date] = None) -> str:
    """Format: db_backup_{YYYY-MM-DD}.sql"""
    day = day or date.today()
    return f"{DUMP_PREFIX}{day.isoformat()}.{DUMP_EXTENSION}"


def create_archive(source_paths: List[str], extra_file: Optional[str], output_path: str) -> str:
    """
    Create a gzip-compressed tar archive.

    Args:
        source_paths: Directories (or files) to include, each stored under its base name
        extra_file: Additional file to include at the archive root (the database dump)
        output_path: Full path of the archive to create

    Returns:
        Path to the created archive

    Raises:
        ArchiveError: If a source is missing, two sources share a base name,
            or the archive cannot be written
    """
    members = list(source_paths)
    if extra_file:
        members.append(extra_file)

    if not members:
        raise ArchiveError("No source paths provided")

    seen = {}
    for member in members:
        source = Path(member)
        if not source.exists():
            raise ArchiveError(f"Path does not exist: {member}")

        arcname = _arcname(source)
        if arcname in seen:
            raise ArchiveError(
                f"Two sources share the archive name '{arcname}': {seen[arcname]} and {member}"
            )
        seen[arcname] = member

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            for arcname, member in seen.items():
                logger.debug(f"Adding {member} as {arcname}")
                tar.add(member, arcname=arcname, recursive=True)
    except (OSError, tarfile.TarError) as e:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            os.remove(output_path)
        raise ArchiveError(f"Failed to create archive: {e}")

    return output_path


def extract_archive(archive_path: str, dest_dir: str) -> str:
    """
    Extract an archive created by create_archive().

    Members with absolute paths, parent references or links escaping
    dest_dir are rejected by tarfile's 'data' filter.

    Args:
        archive_path: Path to the archive
        dest_dir: Directory to extract into (created if missing)

    Returns:
        dest_dir

    Raises:
        ArchiveError: If the archive is unreadable or corrupt
    """
    if not os.path.isfile(archive_path):
        raise ArchiveError(f"Archive not found: {archive_path}")

    try:
        os.makedirs(dest_dir, exist_ok=True)
        with tarfile.open(archive_path, 'r:*') as tar:
            tar.extractall(dest_dir, filter='data')
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise ArchiveError(f"Failed to extract {os.path.basename(archive_path)}: {e}")

    return dest_dir


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")


def _arcname(source: Path) -> str:
    name = source.name or source.resolve().name
    if not name:
        raise ArchiveError(f"Cannot archive filesystem root: {source}")
    return name


def generate_remote_filename(day: Optional[date] = None) -> str:
    """Format: backup_{YYYY-MM-DD}.tar.gz.enc"""
    return f"{generate_archive_filename(day)}.{ENCRYPTED_EXTENSION}"


def parse_backup_date(name: str) -> Optional[date]:
    """
    Extract the calendar day from a remote backup name.

    Returns:
        The date, or None if the name does not follow the backup naming convention
    """
    match = REMOTE_NAME_PATTERN.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), '%Y-%m-%d').date()
    except ValueError:
        return None
