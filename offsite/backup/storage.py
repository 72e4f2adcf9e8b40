"""
Remote storage handlers for encrypted backups.

Supports:
- FTPStorage: FTP with explicit TLS (FTPS) or plain FTP
- SFTPStorage: SFTP over SSH

Each operation opens one authenticated session and closes it again; there is
no connection pooling. Uploads are written under a '.part' name and renamed
into place, so a half-transferred file never carries a backup name.
"""

import os
import stat
import ftplib
import logging
import posixpath
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from offsite.config import Config
from offsite.errors import TransportError
from .compression import parse_backup_date


logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = '.part'
PREVIOUS_SUFFIX = '.old'
DEFAULT_TIMEOUT = 60


@dataclass(frozen=True)
class RemoteObject:
    """One entry of a remote listing."""

    name: str
    position: int
    modified: Optional[datetime] = None
    size: Optional[int] = None

    @property
    def backup_date(self) -> Optional[date]:
        return parse_backup_date(self.name)

    @property
    def is_backup(self) -> bool:
        return self.backup_date is not None


class RemoteStorage:
    """
    Interface shared by the transport implementations.

    list() returns entries in the transport's listing order: names sorted in
    descending order, which for date-stamped backup names is newest first.
    """

    def upload(self, local_path: str, remote_name: Optional[str] = None) -> str:
        raise NotImplementedError

    def list(self) -> List[RemoteObject]:
        raise NotImplementedError

    def download(self, remote_name: str, local_path: str) -> str:
        raise NotImplementedError

    def delete(self, remote_name: str):
        raise NotImplementedError

    def test_connection(self) -> bool:
        raise NotImplementedError

    @staticmethod
    def _ordered(entries) -> List[RemoteObject]:
        """Build RemoteObjects from (name, modified, size) tuples in listing order."""
        entries = sorted(entries, key=lambda entry: entry[0], reverse=True)
        return [
            RemoteObject(name=name, position=position, modified=modified, size=size)
            for position, (name, modified, size) in enumerate(entries)
        ]

    @staticmethod
    def _check_local_file(local_path: str):
        if not os.path.isfile(local_path):
            raise TransportError(f"Local file not found: {local_path}")


class FTPStorage(RemoteStorage):
    """
    Handler for FTP / FTPS remote storage.

    With use_tls the control channel is upgraded with AUTH TLS and the data
    channel protected with PROT P.
    """

    def __init__(self, host: str, username: str, password: str, port: int = 21,
                 remote_dir: str = '', use_tls: bool = True, timeout: int = DEFAULT_TIMEOUT):
        """
        Initialize FTP storage handler.

        Args:
            host: FTP server hostname
            username: FTP username
            password: FTP password
            port: FTP control port (default: 21)
            remote_dir: Directory on the server holding backups (default: login directory)
            use_tls: Use explicit FTPS (default: True)
            timeout: Socket timeout in seconds
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.remote_dir = remote_dir
        self.use_tls = use_tls
        self.timeout = timeout

    @contextmanager
    def _session(self, create_dir: bool = False):
        """
        Open an authenticated session.

        Raises:
            TransportError: If connection, login or changing directory fails
        """
        ftp = ftplib.FTP_TLS(timeout=self.timeout) if self.use_tls else ftplib.FTP(timeout=self.timeout)

        try:
            ftp.connect(self.host, self.port)
        except ftplib.all_errors as e:
            ftp.close()
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        try:
            ftp.login(self.username, self.password)
            if self.use_tls:
                ftp.prot_p()
            ftp.set_pasv(True)
        except ftplib.error_perm as e:
            ftp.close()
            raise TransportError(f"FTP authentication failed for {self.username}@{self.host}: {e}") from e
        except ftplib.all_errors as e:
            ftp.close()
            raise TransportError(f"FTP login to {self.host} failed: {e}") from e

        try:
            if self.remote_dir:
                self._change_dir(ftp, create_dir)
            yield ftp
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    def _change_dir(self, ftp: ftplib.FTP, create: bool):
        try:
            ftp.cwd(self.remote_dir)
            return
        except ftplib.error_perm as e:
            if not create:
                raise TransportError(f"Remote directory not accessible: {self.remote_dir}: {e}") from e
        except ftplib.all_errors as e:
            raise TransportError(f"Failed to change to {self.remote_dir}: {e}") from e

        # Create directory structure one component at a time
        current = '/' if self.remote_dir.startswith('/') else ''
        try:
            for part in [p for p in self.remote_dir.split('/') if p]:
                current = posixpath.join(current, part) if current else part
                try:
                    ftp.cwd(current)
                except ftplib.error_perm:
                    ftp.mkd(current)
            ftp.cwd(self.remote_dir)
        except ftplib.all_errors as e:
            raise TransportError(f"Failed to create remote directory {self.remote_dir}: {e}") from e

        logger.info(f"Created remote directory: {self.remote_dir}")

    def upload(self, local_path: str, remote_name: Optional[str] = None) -> str:
        """
        Upload a file, replacing any object with the same name.

        Returns:
            Remote name of the uploaded file

        Raises:
            TransportError: If the upload fails
        """
        self._check_local_file(local_path)
        remote_name = remote_name or os.path.basename(local_path)
        partial_name = remote_name + PARTIAL_SUFFIX

        with self._session(create_dir=True) as ftp:
            try:
                with open(local_path, 'rb') as f:
                    ftp.storbinary(f'STOR {partial_name}', f)
            except ftplib.all_errors as e:
                self._discard_partial(ftp, partial_name)
                raise TransportError(f"FTP upload of {remote_name} failed: {e}") from e

            self._promote(ftp, partial_name, remote_name)

        return remote_name

    def _promote(self, ftp: ftplib.FTP, partial_name: str, remote_name: str):
        """
        Rename the finished upload into place.

        An object already holding the name is moved aside first and moved
        back if the rename fails, so the earlier backup is never lost.
        """
        previous_name = remote_name + PREVIOUS_SUFFIX
        try:
            ftp.rename(remote_name, previous_name)
            replacing = True
        except ftplib.error_perm:
            # 550: no previous upload under this name
            replacing = False
        except ftplib.all_errors as e:
            self._discard_partial(ftp, partial_name)
            raise TransportError(f"FTP upload of {remote_name} failed: {e}") from e

        try:
            ftp.rename(partial_name, remote_name)
        except ftplib.all_errors as e:
            if replacing:
                try:
                    ftp.rename(previous_name, remote_name)
                except ftplib.all_errors as restore_error:
                    raise TransportError(
                        f"FTP upload of {remote_name} failed: {e}; previous backup left as "
                        f"{previous_name} ({restore_error}), new upload left as {partial_name}"
                    ) from e
            self._discard_partial(ftp, partial_name)
            raise TransportError(f"FTP upload of {remote_name} failed: {e}") from e

        if replacing:
            logger.info(f"Replaced existing remote backup: {remote_name}")
            try:
                ftp.delete(previous_name)
            except ftplib.all_errors as e:
                logger.warning(f"Could not remove previous backup {previous_name}: {e}")

    def _discard_partial(self, ftp: ftplib.FTP, partial_name: str):
        try:
            ftp.delete(partial_name)
        except ftplib.all_errors as e:
            logger.warning(f"Could not remove partial upload {partial_name}: {e}")

    def list(self) -> List[RemoteObject]:
        """
        List regular files in the remote directory.

        Uses MLSD when the server supports it (gives modification times),
        otherwise NLST.

        Raises:
            TransportError: If listing fails
        """
        with self._session() as ftp:
            try:
                try:
                    entries = [
                        (name, _parse_mlsd_time(facts.get('modify')), _parse_int(facts.get('size')))
                        for name, facts in ftp.mlsd(facts=['type', 'modify', 'size'])
                        if facts.get('type', 'file') == 'file'
                    ]
                except ftplib.error_perm:
                    entries = [(name, None, None) for name in self._nlst(ftp)]
            except ftplib.all_errors as e:
                raise TransportError(f"FTP listing failed: {e}") from e

        return self._ordered(entries)

    @staticmethod
    def _nlst(ftp: ftplib.FTP) -> List[str]:
        try:
            names = ftp.nlst()
        except ftplib.error_perm as e:
            # Some servers answer 550 for an empty directory
            if str(e).startswith('550'):
                return []
            raise
        return [posixpath.basename(n) for n in names if posixpath.basename(n) not in ('.', '..', '')]

    def download(self, remote_name: str, local_path: str) -> str:
        """
        Download a remote file.

        Returns:
            local_path

        Raises:
            TransportError: If the download fails
        """
        partial_path = local_path + PARTIAL_SUFFIX

        with self._session() as ftp:
            try:
                with open(partial_path, 'wb') as f:
                    ftp.retrbinary(f'RETR {remote_name}', f.write)
            except ftplib.all_errors as e:
                if os.path.exists(partial_path):
                    os.remove(partial_path)
                raise TransportError(f"FTP download of {remote_name} failed: {e}") from e

        os.replace(partial_path, local_path)
        return local_path

    def delete(self, remote_name: str):
        """
        Delete a remote file.

        Raises:
            TransportError: If deletion fails
        """
        with self._session() as ftp:
            try:
                ftp.delete(remote_name)
            except ftplib.all_errors as e:
                raise TransportError(f"FTP delete of {remote_name} failed: {e}") from e

    def test_connection(self) -> bool:
        """
        Log in and issue a NOOP.

        Raises:
            TransportError: If the server cannot be reached or login fails
        """
        with self._session() as ftp:
            try:
                ftp.voidcmd('NOOP')
            except ftplib.all_errors as e:
                raise TransportError(f"FTP connection test failed: {e}") from e
        return True


class SFTPStorage(RemoteStorage):
    """
    Handler for SFTP remote storage over SSH.
    """

    def __init__(self, host: str, username: str, password: str, port: int = 22,
                 remote_dir: str = '', timeout: int = DEFAULT_TIMEOUT):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.remote_dir = remote_dir
        self.timeout = timeout

    @contextmanager
    def _session(self, create_dir: bool = False):
        """
        Open an SSH connection and SFTP channel.

        Raises:
            TransportError: If connection or authentication fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise TransportError(f"SSH authentication failed for {self.username}@{self.host}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        try:
            if self.remote_dir:
                self._change_dir(sftp_client, create_dir)
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    def _change_dir(self, sftp: paramiko.SFTPClient, create: bool):
        try:
            sftp.chdir(self.remote_dir)
            return
        except IOError as e:
            if not create:
                raise TransportError(f"Remote directory not accessible: {self.remote_dir}: {e}") from e

        current = '/' if self.remote_dir.startswith('/') else ''
        try:
            for part in [p for p in self.remote_dir.split('/') if p]:
                current = posixpath.join(current, part) if current else part
                try:
                    sftp.stat(current)
                except IOError:
                    sftp.mkdir(current)
            sftp.chdir(self.remote_dir)
        except (IOError, paramiko.SSHException) as e:
            raise TransportError(f"Failed to create remote directory {self.remote_dir}: {e}") from e

        logger.info(f"Created remote directory: {self.remote_dir}")

    def upload(self, local_path: str, remote_name: Optional[str] = None) -> str:
        self._check_local_file(local_path)
        remote_name = remote_name or os.path.basename(local_path)
        partial_name = remote_name + PARTIAL_SUFFIX

        with self._session(create_dir=True) as sftp:
            try:
                sftp.put(local_path, partial_name)
            except (IOError, paramiko.SSHException) as e:
                self._discard_partial(sftp, partial_name)
                raise TransportError(f"SFTP upload of {remote_name} failed: {e}") from e

            try:
                sftp.posix_rename(partial_name, remote_name)
            except IOError:
                # Server without the posix-rename extension
                self._promote(sftp, partial_name, remote_name)
            except paramiko.SSHException as e:
                self._discard_partial(sftp, partial_name)
                raise TransportError(f"SFTP upload of {remote_name} failed: {e}") from e

        return remote_name

    def _promote(self, sftp: paramiko.SFTPClient, partial_name: str, remote_name: str):
        """
        Rename the finished upload into place with plain SFTP renames.

        Plain rename does not overwrite, so an existing object is moved aside
        first and moved back if the rename fails.
        """
        previous_name = remote_name + PREVIOUS_SUFFIX
        try:
            sftp.rename(remote_name, previous_name)
            replacing = True
        except IOError:
            # No previous upload under this name
            replacing = False
        except paramiko.SSHException as e:
            self._discard_partial(sftp, partial_name)
            raise TransportError(f"SFTP upload of {remote_name} failed: {e}") from e

        try:
            sftp.rename(partial_name, remote_name)
        except (IOError, paramiko.SSHException) as e:
            if replacing:
                try:
                    sftp.rename(previous_name, remote_name)
                except (IOError, paramiko.SSHException) as restore_error:
                    raise TransportError(
                        f"SFTP upload of {remote_name} failed: {e}; previous backup left as "
                        f"{previous_name} ({restore_error}), new upload left as {partial_name}"
                    ) from e
            self._discard_partial(sftp, partial_name)
            raise TransportError(f"SFTP upload of {remote_name} failed: {e}") from e

        if replacing:
            logger.info(f"Replaced existing remote backup: {remote_name}")
            try:
                sftp.remove(previous_name)
            except (IOError, paramiko.SSHException) as e:
                logger.warning(f"Could not remove previous backup {previous_name}: {e}")

    def _discard_partial(self, sftp: paramiko.SFTPClient, partial_name: str):
        try:
            sftp.remove(partial_name)
        except (IOError, paramiko.SSHException) as e:
            logger.warning(f"Could not remove partial upload {partial_name}: {e}")

    def list(self) -> List[RemoteObject]:
        with self._session() as sftp:
            try:
                attrs = sftp.listdir_attr('.')
            except (IOError, paramiko.SSHException) as e:
                raise TransportError(f"SFTP listing failed: {e}") from e

        entries = [
            (
                item.filename,
                datetime.fromtimestamp(item.st_mtime, timezone.utc).replace(tzinfo=None)
                if item.st_mtime is not None else None,
                item.st_size,
            )
            for item in attrs
            if item.st_mode is None or not stat.S_ISDIR(item.st_mode)
        ]
        return self._ordered(entries)

    def download(self, remote_name: str, local_path: str) -> str:
        partial_path = local_path + PARTIAL_SUFFIX

        with self._session() as sftp:
            try:
                sftp.get(remote_name, partial_path)
            except (IOError, paramiko.SSHException) as e:
                if os.path.exists(partial_path):
                    os.remove(partial_path)
                raise TransportError(f"SFTP download of {remote_name} failed: {e}") from e

        os.replace(partial_path, local_path)
        return local_path

    def delete(self, remote_name: str):
        with self._session() as sftp:
            try:
                sftp.remove(remote_name)
            except (IOError, paramiko.SSHException) as e:
                raise TransportError(f"SFTP delete of {remote_name} failed: {e}") from e

    def test_connection(self) -> bool:
        with self._session() as sftp:
            try:
                sftp.listdir('.')
            except (IOError, paramiko.SSHException) as e:
                raise TransportError(f"SFTP connection test failed: {e}") from e
        return True


def create_storage(config: Config) -> RemoteStorage:
    """
    Factory function to create the storage handler for FTP_PROTOCOL.

    Args:
        config: Run configuration

    Returns:
        FTPStorage or SFTPStorage instance
    """
    if config.ftp_protocol == 'sftp':
        return SFTPStorage(
            host=config.ftp_host,
            username=config.ftp_user,
            password=config.ftp_pass,
            port=config.ftp_port,
            remote_dir=config.ftp_remote_dir,
        )
    elif config.ftp_protocol in ('ftps', 'ftp'):
        return FTPStorage(
            host=config.ftp_host,
            username=config.ftp_user,
            password=config.ftp_pass,
            port=config.ftp_port,
            remote_dir=config.ftp_remote_dir,
            use_tls=config.ftp_protocol == 'ftps',
        )
    else:
        raise ValueError(f"Invalid protocol: {config.ftp_protocol}")


def _parse_mlsd_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], '%Y%m%d%H%M%S')
    except ValueError:
        return None


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None
