"""
Backup and restore executors - orchestrate the complete workflows.

Backup workflow:
1. Acquire the run lock and create a scratch directory under BACKUP_BASE_DIR
2. Dump the database
3. Create the archive (directories + dump)
4. Encrypt the archive
5. Upload to remote storage
6. Prune old remote backups (best-effort)
7. Remove the scratch directory and release the lock (always)

Restore workflow:
1. Acquire the run lock and create a scratch directory
2. Fetch, decrypt and extract the newest remote backup
3. Restore the database and the configured directories
4. Remove the scratch directory and release the lock (always)
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from offsite.config import Config
from offsite.utils.crypto import FileCipher
from offsite.utils.lock import RunLock
from .compression import (
    create_archive,
    generate_archive_filename,
    generate_remote_filename,
    get_archive_size,
)
from .dump import MySQLDumpProvider
from .restore import RestorePipeline
from .retention import RetentionManager
from .storage import RemoteStorage, create_storage


logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Result of one backup or restore run."""

    operation: str
    status: str = 'running'  # running, success, failed, interrupted
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    remote_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class _PipelineExecutor:
    """
    Shared run discipline: lock, scratch directory, report, cleanup.
    """

    operation = ''

    def __init__(self, config: Config, storage: Optional[RemoteStorage] = None,
                 dump_provider: Optional[MySQLDumpProvider] = None,
                 cipher: Optional[FileCipher] = None):
        """
        Args:
            config: Run configuration
            storage: Remote storage handler (default: from FTP_PROTOCOL)
            dump_provider: Database dump provider (default: MySQL)
            cipher: File cipher (default: from ENCRYPTION_* settings)
        """
        self.config = config
        self.storage = storage or create_storage(config)
        self.dump_provider = dump_provider or MySQLDumpProvider(config)
        self.cipher = cipher or FileCipher(config.encryption_passphrase, config.encryption_cipher)
        self.work_dir = None
        self.report = None

    def execute(self) -> RunReport:
        """
        Run the workflow.

        Returns:
            RunReport with status 'success'

        Raises:
            LockError: If another run is in progress
            OffsiteError: Whatever stage failed; cleanup has already run
        """
        self.report = RunReport(operation=self.operation)

        with RunLock(self.config.lock_path):
            logger.info(f"Starting {self.operation} process...")

            try:
                self.work_dir = self._prepare_work_dir()
                self._execute_workflow()

                self.report.status = 'success'
                logger.info(f"{self.operation.capitalize()} process completed successfully")

            except (KeyboardInterrupt, SystemExit):
                self.report.status = 'interrupted'
                self.report.error_message = 'Interrupted'
                logger.error(f"{self.operation.capitalize()} process interrupted")
                raise

            except Exception as e:
                self.report.status = 'failed'
                self.report.error_message = str(e)
                logger.error(f"{self.operation.capitalize()} process failed: {e}")
                raise

            finally:
                self.report.completed_at = datetime.now()
                self._cleanup()

        return self.report

    def _prepare_work_dir(self) -> str:
        os.makedirs(self.config.base_dir, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix=f'{self.operation}_', dir=self.config.base_dir)
        logger.debug(f"Working directory: {work_dir}")
        return work_dir

    def _execute_workflow(self):
        raise NotImplementedError

    def _cleanup(self):
        """Remove the scratch directory and everything written into it."""
        if self.work_dir and os.path.exists(self.work_dir):
            logger.info("Cleaning up temporary files...")
            try:
                shutil.rmtree(self.work_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup working directory {self.work_dir}: {e}")
        self.work_dir = None


class BackupExecutor(_PipelineExecutor):
    """Dump, archive, encrypt, upload, prune."""

    operation = 'backup'

    def _execute_workflow(self):
        day = date.today()

        # Step 1: Database dump
        logger.info("Starting database backup...")
        dump_path = self.dump_provider.produce_dump(self.work_dir, day)

        # Step 2: Archive
        logger.info("Creating backup archive...")
        archive_path = create_archive(
            list(self.config.backup_dirs),
            dump_path,
            os.path.join(self.work_dir, generate_archive_filename(day))
        )
        logger.info(f"Archive created: {os.path.basename(archive_path)} "
                    f"({get_archive_size(archive_path) / 1024 / 1024:.2f} MB)")

        # Step 3: Encrypt
        logger.info("Encrypting backup...")
        encrypted_path = self.cipher.encrypt(archive_path)
        self.report.file_size_bytes = get_archive_size(encrypted_path)

        # Step 4: Upload
        logger.info("Uploading backup to remote storage...")
        self.report.remote_name = self.storage.upload(encrypted_path, generate_remote_filename(day))
        logger.info(f"Uploaded: {self.report.remote_name}")

        # Step 5: Retention (best-effort)
        result = RetentionManager(self.storage).prune(self.config.retention_count)
        self.report.warnings.extend(result.errors)


class RestoreExecutor(_PipelineExecutor):
    """Fetch, decrypt, extract, restore."""

    operation = 'restore'

    def _execute_workflow(self):
        pipeline = RestorePipeline(self.config, self.storage, self.dump_provider, self.cipher)
        try:
            summary = pipeline.run(self.work_dir)
        finally:
            self.report.remote_name = pipeline.summary.remote_name
            self.report.warnings.extend(pipeline.summary.warnings)

        logger.info(
            f"Restored {len(summary.restored_dirs)} directories, "
            f"skipped {len(summary.skipped_dirs)}, "
            f"database {'restored' if summary.database_restored else 'not restored'}"
        )


def execute_backup(config: Config) -> RunReport:
    """Run a backup with the default collaborators."""
    return BackupExecutor(config).execute()
