"""
Database dump provider.

Wraps the MySQL/MariaDB client binaries: mysqldump to produce a logical dump,
mysql to replay one. Credentials are passed through a private option file so
they never appear in the process list.
"""

import os
import logging
import tempfile
import subprocess
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Optional

from offsite.config import Config
from offsite.errors import DumpError, RestoreError
from .compression import generate_dump_filename, DUMP_EXTENSION, DUMP_PREFIX


logger = logging.getLogger(__name__)


class MySQLDumpProvider:
    """Produces and restores logical dumps of one database."""

    dump_command = 'mysqldump'
    restore_command = 'mysql'

    def __init__(self, config: Config):
        self.host = config.db_host
        self.port = config.db_port
        self.user = config.db_user
        self.password = config.db_pass
        self.database = config.db_name

    @contextmanager
    def _options_file(self):
        """Write a 0600 [client] option file for the duration of a command."""
        fd, path = tempfile.mkstemp(prefix='offsite_mysql_', suffix='.cnf')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write("[client]\n")
                f.write(f"host={self.host}\n")
                f.write(f"port={self.port}\n")
                f.write(f"user={self.user}\n")
                f.write(f'password="{_escape_option(self.password)}"\n')
            os.chmod(path, 0o600)
            yield path
        finally:
            if os.path.exists(path):
                os.remove(path)

    def produce_dump(self, work_dir: str, day: Optional[date] = None) -> str:
        """
        Dump the database to a date-stamped file.

        Args:
            work_dir: Directory to write the dump into
            day: Calendar day for the file name (default: today)

        Returns:
            Path to the dump file

        Raises:
            DumpError: If the dump command is missing or exits non-zero
        """
        dump_path = os.path.join(work_dir, generate_dump_filename(day))
        logger.info(f"Dumping database '{self.database}' from {self.host}:{self.port}")

        with self._options_file() as options:
            cmd = [
                self.dump_command,
                f"--defaults-extra-file={options}",
                '--single-transaction',
                '--routines',
                '--triggers',
                self.database,
            ]

            try:
                with open(dump_path, 'wb') as out:
                    result = subprocess.run(cmd, stdout=out, stderr=subprocess.PIPE)
            except FileNotFoundError:
                _discard(dump_path)
                raise DumpError(f"{self.dump_command} not found on PATH")
            except OSError as e:
                _discard(dump_path)
                raise DumpError(f"Failed to run {self.dump_command}: {e}")

        if result.returncode != 0:
            _discard(dump_path)
            stderr = result.stderr.decode(errors='replace').strip()
            raise DumpError(f"{self.dump_command} exited with code {result.returncode}: {stderr}")

        logger.info(f"Database dump written: {os.path.basename(dump_path)} "
                    f"({os.path.getsize(dump_path) / 1024 / 1024:.2f} MB)")
        return dump_path

    def restore_dump(self, dump_path: str):
        """
        Replay a dump file into the configured database.

        Raises:
            RestoreError: If the client is missing or exits non-zero
        """
        logger.info(f"Restoring database '{self.database}' from {os.path.basename(dump_path)}")

        with self._options_file() as options:
            cmd = [self.restore_command, f"--defaults-extra-file={options}", self.database]

            try:
                with open(dump_path, 'rb') as dump:
                    result = subprocess.run(cmd, stdin=dump, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
            except FileNotFoundError as e:
                if not os.path.exists(dump_path):
                    raise RestoreError(f"Dump file not found: {dump_path}")
                raise RestoreError(f"{self.restore_command} not found on PATH: {e}")
            except OSError as e:
                raise RestoreError(f"Failed to run {self.restore_command}: {e}")

        if result.returncode != 0:
            stderr = result.stderr.decode(errors='replace').strip()
            raise RestoreError(f"Database restore failed with code {result.returncode}: {stderr}")

        logger.info("Database restored")

    @staticmethod
    def find_dump(directory: str) -> Optional[str]:
        """
        Find the dump file in an extracted backup.

        Only db_backup_*.sql files at the archive root count; .sql files
        inside restored directories are never replayed.

        Returns:
            Path to the newest root-level dump, or None
        """
        matches = sorted(
            (p for p in Path(directory).glob(f'{DUMP_PREFIX}*.{DUMP_EXTENSION}') if p.is_file()),
            reverse=True
        )
        return str(matches[0]) if matches else None


def _escape_option(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


def _discard(path: str):
    if os.path.exists(path):
        os.remove(path)
