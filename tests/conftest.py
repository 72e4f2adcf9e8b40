"""
Shared pytest fixtures for offsite tests.

This module provides fixtures for:
- Run configuration pointing at temporary directories
- Source directory trees to back up
- An in-memory remote store and a fake database dump provider
- A fast FileCipher (low PBKDF2 iteration count)
- Mock fixtures for external services (FTP, SSH)
"""

import os
import shutil
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from offsite.config import Config
from offsite.errors import DumpError, TransportError
from offsite.utils.crypto import FileCipher
from offsite.backup.compression import generate_dump_filename
from offsite.backup.dump import MySQLDumpProvider
from offsite.backup.storage import RemoteStorage


PASSPHRASE = 'correct horse battery staple'
FAST_ITERATIONS = 1000

SAMPLE_SQL = b"CREATE TABLE orders (id INT PRIMARY KEY);\nINSERT INTO orders VALUES (1);\n"


class MemoryStorage(RemoteStorage):
    """
    Remote store backed by a local directory.

    Records every call and can be told to fail uploads or specific deletions.
    """

    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.calls = []
        self.fail_upload = False
        self.fail_list = False
        self.fail_delete = set()

    def add(self, name, data=b'remote data'):
        (self.root / name).write_bytes(data)

    def names(self):
        return sorted(p.name for p in self.root.iterdir() if p.is_file())

    def upload(self, local_path, remote_name=None):
        self.calls.append(('upload', remote_name))
        if self.fail_upload:
            raise TransportError("553 Could not create file")
        self._check_local_file(local_path)
        remote_name = remote_name or os.path.basename(local_path)
        shutil.copyfile(local_path, self.root / remote_name)
        return remote_name

    def list(self):
        self.calls.append(('list',))
        if self.fail_list:
            raise TransportError("Connection reset by peer")
        return self._ordered(
            (p.name, None, p.stat().st_size) for p in self.root.iterdir() if p.is_file()
        )

    def download(self, remote_name, local_path):
        self.calls.append(('download', remote_name))
        source = self.root / remote_name
        if not source.exists():
            raise TransportError(f"550 {remote_name}: No such file")
        shutil.copyfile(source, local_path)
        return local_path

    def delete(self, remote_name):
        self.calls.append(('delete', remote_name))
        if remote_name in self.fail_delete:
            raise TransportError(f"550 {remote_name}: Permission denied")
        (self.root / remote_name).unlink()

    def test_connection(self):
        return True

    def call_names(self):
        return [call[0] for call in self.calls]


class FakeDumpProvider(MySQLDumpProvider):
    """Writes a canned dump instead of running mysqldump and records restores."""

    def __init__(self, config, sql=SAMPLE_SQL, fail=False):
        super().__init__(config)
        self.sql = sql
        self.fail = fail
        self.dumps = []
        self.restored = []

    def produce_dump(self, work_dir, day=None):
        if self.fail:
            raise DumpError("mysqldump exited with code 2: Access denied for user 'dbuser'")
        path = os.path.join(work_dir, generate_dump_filename(day))
        with open(path, 'wb') as f:
            f.write(self.sql)
        self.dumps.append(path)
        return path

    def restore_dump(self, dump_path):
        with open(dump_path, 'rb') as f:
            self.restored.append(f.read())


@pytest.fixture(autouse=True)
def reset_offsite_logger():
    """Drop handlers installed by configure_logging() between tests."""
    yield
    logger = logging.getLogger('offsite')
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def source_dirs(tmp_path):
    """
    Create three live directories to back up.

    Creates:
    - live/www/index.html, live/www/assets/app.js
    - live/nginx/nginx.conf
    - live/uploads/photo.jpg
    """
    live = tmp_path / 'live'

    www = live / 'www'
    (www / 'assets').mkdir(parents=True)
    (www / 'index.html').write_text('<h1>hello</h1>')
    (www / 'assets' / 'app.js').write_text('console.log("app");')

    nginx = live / 'nginx'
    nginx.mkdir()
    (nginx / 'nginx.conf').write_text('worker_processes 4;')

    uploads = live / 'uploads'
    uploads.mkdir()
    (uploads / 'photo.jpg').write_bytes(bytes(range(256)) * 64)

    return [www, nginx, uploads]


@pytest.fixture
def config(tmp_path, source_dirs):
    """Configuration with every local path under tmp_path."""
    return Config(
        ftp_host='ftp.example.com',
        ftp_user='backup',
        ftp_pass='ftp-secret',
        backup_dirs=tuple(str(d) for d in source_dirs),
        retention_count=3,
        db_user='dbuser',
        db_pass='db-secret',
        db_name='shop',
        encryption_passphrase=PASSPHRASE,
        base_dir=str(tmp_path / 'work'),
        log_dir=str(tmp_path / 'logs'),
    )


@pytest.fixture
def env(tmp_path, source_dirs):
    """Complete set of configuration variables."""
    return {
        'FTP_HOST': 'ftp.example.com',
        'FTP_USER': 'backup',
        'FTP_PASS': 'ftp-secret',
        'BACKUP_DIRS': '(' + ' '.join(str(d) for d in source_dirs) + ')',
        'DB_USER': 'dbuser',
        'DB_PASS': 'db-secret',
        'DB_NAME': 'shop',
        'ENCRYPTION_PASSPHRASE': PASSPHRASE,
        'BACKUP_BASE_DIR': str(tmp_path / 'work'),
        'BACKUP_LOG_DIR': str(tmp_path / 'logs'),
    }


@pytest.fixture
def make_cipher():
    """Factory for FileCipher instances with a low iteration count."""
    def _make(cipher='AES256', passphrase=PASSPHRASE, iterations=FAST_ITERATIONS):
        return FileCipher(passphrase, cipher, iterations=iterations)
    return _make


@pytest.fixture
def cipher(make_cipher):
    """FileCipher with a low iteration count to keep tests fast."""
    return make_cipher()


@pytest.fixture
def storage(tmp_path):
    """In-memory remote store rooted at tmp_path/remote."""
    return MemoryStorage(tmp_path / 'remote')


@pytest.fixture
def dump_provider(config):
    return FakeDumpProvider(config)


@pytest.fixture
def mock_ftp():
    """
    Mock ftplib.FTP_TLS for FTPS testing.

    Returns the MagicMock instance every session receives.
    """
    with patch('offsite.backup.storage.ftplib.FTP_TLS') as mock_ftp_class:
        ftp = MagicMock()
        mock_ftp_class.return_value = ftp
        ftp.mlsd.return_value = iter([])
        yield ftp


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('offsite.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh
