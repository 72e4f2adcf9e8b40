"""
Restore pipeline.

fetch newest backup -> decrypt -> extract -> restore database -> restore directories
"""

import os
import shutil
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from offsite.config import Config
from offsite.errors import NotFoundError, RestoreError
from offsite.utils.crypto import FileCipher
from .compression import extract_archive
from .dump import MySQLDumpProvider
from .retention import order_by_recency
from .storage import RemoteStorage


logger = logging.getLogger(__name__)

LOCAL_ENCRYPTED_NAME = 'latest_backup.tar.gz.enc'


@dataclass
class RestoreSummary:
    """What a restore run did."""

    remote_name: Optional[str] = None
    database_restored: bool = False
    restored_dirs: List[str] = field(default_factory=list)
    skipped_dirs: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def locate_subtree(extract_dir: str, directory: str, configured_dirs=()) -> Optional[str]:
    """
    Find the extracted copy of a configured directory.

    Matches on base name. A top-level entry wins; otherwise the tree is
    searched breadth-first (so archives holding full paths still match) and
    the first match wins. Entries named after the other configured
    directories are not descended into, so a subdirectory of one never
    stands in for another.

    Args:
        extract_dir: Root of the extracted archive
        directory: Configured live directory
        configured_dirs: Every configured directory

    Returns:
        Path of the matching extracted directory, or None
    """
    name = Path(directory).name
    if not name:
        return None
    claimed = {Path(d).name for d in configured_dirs} - {name}

    queue = deque([Path(extract_dir)])
    while queue:
        current = queue.popleft()
        try:
            children = sorted(p for p in current.iterdir() if p.is_dir() and not p.is_symlink())
        except OSError:
            continue
        for child in children:
            if child.name == name:
                return str(child)
        queue.extend(child for child in children if child.name not in claimed)

    return None


class RestorePipeline:
    """
    Restores the newest remote backup into the live database and directories.
    """

    def __init__(self, config: Config, storage: RemoteStorage,
                 dump_provider: Optional[MySQLDumpProvider] = None,
                 cipher: Optional[FileCipher] = None):
        self.config = config
        self.storage = storage
        self.dump_provider = dump_provider or MySQLDumpProvider(config)
        self.cipher = cipher or FileCipher(config.encryption_passphrase, config.encryption_cipher)
        self.summary = RestoreSummary()

    def fetch_latest(self, work_dir: str) -> str:
        """
        Download the newest encrypted backup.

        Returns:
            Local path of the encrypted file

        Raises:
            NotFoundError: If the remote store holds no backup
            TransportError: If listing or download fails
        """
        logger.info("Fetching latest backup from remote storage...")
        backups = order_by_recency(self.storage.list())

        if not backups:
            raise NotFoundError("No backup files found on remote storage")

        latest = backups[0]
        self.summary.remote_name = latest.name
        logger.info(f"Latest backup: {latest.name}")

        local_path = os.path.join(work_dir, LOCAL_ENCRYPTED_NAME)
        self.storage.download(latest.name, local_path)
        return local_path

    def restore_database(self, extract_dir: str):
        """
        Restore the dump found in the extracted backup.

        A backup without a dump is reported and skipped.

        Raises:
            RestoreError: If the database client fails
        """
        dump_path = self.dump_provider.find_dump(extract_dir)
        if dump_path is None:
            self._warn("No database backup file found")
            return

        self.dump_provider.restore_dump(dump_path)
        self.summary.database_restored = True

    def restore_files(self, extract_dir: str) -> RestoreSummary:
        """
        Copy each extracted directory back over its live counterpart.

        Directories missing from the backup are reported and skipped.

        Raises:
            RestoreError: If copying a directory fails
        """
        logger.info("Restoring file system...")

        for directory in self.config.backup_dirs:
            source = locate_subtree(extract_dir, directory, self.config.backup_dirs)
            if source is None:
                self._warn(f"No backup found for directory: {directory}")
                self.summary.skipped_dirs.append(directory)
                continue

            try:
                shutil.copytree(source, directory, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise RestoreError(f"Failed to restore directory {directory}: {e}") from e

            logger.info(f"Restored directory: {directory}")
            self.summary.restored_dirs.append(directory)

        return self.summary

    def run(self, work_dir: str) -> RestoreSummary:
        """
        Run the full restore inside work_dir.

        Raises:
            NotFoundError, TransportError, CryptoError, ArchiveError, RestoreError
        """
        encrypted_path = self.fetch_latest(work_dir)

        logger.info("Decrypting backup...")
        archive_path = self.cipher.decrypt(encrypted_path)

        logger.info("Extracting backup archive...")
        extract_dir = extract_archive(archive_path, os.path.join(work_dir, 'extracted'))

        self.restore_database(extract_dir)
        self.restore_files(extract_dir)
        return self.summary

    def _warn(self, message: str):
        logger.warning(message)
        self.summary.warnings.append(message)
