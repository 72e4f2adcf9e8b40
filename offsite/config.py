import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import dotenv_values

from offsite.errors import ConfigError
from offsite.utils.crypto import normalize_cipher


REQUIRED_KEYS = (
    'FTP_HOST', 'FTP_USER', 'FTP_PASS',
    'DB_USER', 'DB_PASS', 'DB_NAME',
    'ENCRYPTION_PASSPHRASE',
)

PROTOCOLS = ('ftps', 'ftp', 'sftp')

DEFAULT_RETENTION_COUNT = 8
DEFAULT_CIPHER = 'AES256'
DEFAULT_BASE_DIR = '/var/backups/offsite'
DEFAULT_LOG_DIR = '/var/log/offsite'
DEFAULT_SCHEDULE = '0 2 * * *'


@dataclass(frozen=True)
class Config:
    """Immutable run configuration"""

    # Remote endpoint
    ftp_host: str
    ftp_user: str
    ftp_pass: str = field(repr=False)
    ftp_port: int = 21
    ftp_protocol: str = 'ftps'
    ftp_remote_dir: str = ''

    # Sources and retention
    backup_dirs: Tuple[str, ...] = ()
    retention_count: int = DEFAULT_RETENTION_COUNT

    # Database
    db_user: str = ''
    db_pass: str = field(default='', repr=False)
    db_name: str = ''
    db_host: str = 'localhost'
    db_port: int = 3306

    # Encryption
    encryption_passphrase: str = field(default='', repr=False)
    encryption_cipher: str = DEFAULT_CIPHER

    # Local layout
    base_dir: str = DEFAULT_BASE_DIR
    log_dir: str = DEFAULT_LOG_DIR
    lock_file: str = ''
    schedule: str = DEFAULT_SCHEDULE

    @property
    def lock_path(self) -> str:
        """Run lock lives next to the working directory, never inside it."""
        return self.lock_file or os.path.normpath(self.base_dir) + '.lock'


def parse_dir_list(value: str) -> Tuple[str, ...]:
    """
    Parse BACKUP_DIRS.

    Accepts the shell array form used by sourced .env files, "(/srv/www /etc)",
    as well as comma, newline or whitespace separated lists.

    Args:
        value: Raw configuration value

    Returns:
        Tuple of paths in their configured order
    """
    value = (value or '').strip()
    if value.startswith('(') and value.endswith(')'):
        value = value[1:-1]

    try:
        parts = shlex.split(value.replace(',', ' '))
    except ValueError as e:
        raise ConfigError(f"Invalid BACKUP_DIRS value: {e}")

    return tuple(p for p in parts if p)


def _positive_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = (values.get(key) or '').strip()
    if not raw:
        return default

    try:
        number = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a positive integer, got {raw!r}")

    if number < 1:
        raise ConfigError(f"{key} must be a positive integer, got {raw!r}")
    return number


def _read_sources(env_file: Optional[str], environ: Optional[Mapping[str, str]]) -> dict:
    if environ is None:
        environ = os.environ

    if env_file is None:
        env_file = environ.get('OFFSITE_ENV_FILE') or '.env'

    values = {}
    if env_file and os.path.isfile(env_file):
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})

    # Process environment wins over the file
    values.update(environ)
    return values


def load_config(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and validate configuration.

    Args:
        env_file: Optional .env file (default: $OFFSITE_ENV_FILE or ./.env)
        environ: Environment mapping (default: os.environ)

    Returns:
        Config instance

    Raises:
        ConfigError: If a required key is missing or a value is invalid
    """
    values = _read_sources(env_file, environ)

    missing = [key for key in REQUIRED_KEYS if not (values.get(key) or '').strip()]
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    protocol = (values.get('FTP_PROTOCOL') or 'ftps').strip().lower()
    if protocol not in PROTOCOLS:
        raise ConfigError(f"Invalid FTP_PROTOCOL: {protocol}. Valid options: {list(PROTOCOLS)}")

    default_port = 22 if protocol == 'sftp' else 21

    cipher = (values.get('ENCRYPTION_CIPHER') or DEFAULT_CIPHER).strip()

    try:
        normalize_cipher(cipher)
    except ValueError as e:
        raise ConfigError(str(e))

    schedule = (values.get('BACKUP_SCHEDULE') or DEFAULT_SCHEDULE).strip()
    if len(schedule.split()) != 5:
        raise ConfigError(f"BACKUP_SCHEDULE must be a 5-field cron expression, got {schedule!r}")

    return Config(
        ftp_host=values['FTP_HOST'].strip(),
        ftp_user=values['FTP_USER'],
        ftp_pass=values['FTP_PASS'],
        ftp_port=_positive_int(values, 'FTP_PORT', default_port),
        ftp_protocol=protocol,
        ftp_remote_dir=(values.get('FTP_REMOTE_DIR') or '').strip(),
        backup_dirs=parse_dir_list(values.get('BACKUP_DIRS', '')),
        retention_count=_positive_int(values, 'BACKUP_RETENTION_COUNT', DEFAULT_RETENTION_COUNT),
        db_user=values['DB_USER'],
        db_pass=values['DB_PASS'],
        db_name=values['DB_NAME'].strip(),
        db_host=(values.get('DB_HOST') or 'localhost').strip(),
        db_port=_positive_int(values, 'DB_PORT', 3306),
        encryption_passphrase=values['ENCRYPTION_PASSPHRASE'],
        encryption_cipher=cipher,
        base_dir=(values.get('BACKUP_BASE_DIR') or DEFAULT_BASE_DIR).strip(),
        log_dir=(values.get('BACKUP_LOG_DIR') or DEFAULT_LOG_DIR).strip(),
        lock_file=(values.get('BACKUP_LOCK_FILE') or '').strip(),
        schedule=schedule,
    )


def safe_dump(config: Config) -> str:
    """Human readable configuration summary without secrets."""
    return (
        f"remote={config.ftp_protocol}://{config.ftp_user}@{config.ftp_host}:{config.ftp_port}"
        f"/{config.ftp_remote_dir.lstrip('/')} "
        f"dirs={len(config.backup_dirs)} retention={config.retention_count} "
        f"db={config.db_user}@{config.db_host}:{config.db_port}/{config.db_name} "
        f"cipher={config.encryption_cipher}"
    )
