"""
Command line entry points.

    offsite backup     dump, archive, encrypt, upload, prune
    offsite restore    fetch newest backup and restore it
    offsite list       show remote backups, newest first
    offsite schedule   run backups on BACKUP_SCHEDULE until stopped

This is the only place where errors become exit codes.
"""

import os
import sys
import signal
import logging
import argparse
from contextlib import contextmanager
from typing import List, Optional

from offsite import __version__, configure_logging
from offsite.config import Config, load_config, safe_dump
from offsite.errors import ConfigError, LockError, OffsiteError
from offsite.backup.executor import BackupExecutor, RestoreExecutor
from offsite.backup.retention import order_by_recency
from offsite.backup.storage import create_storage


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3
EXIT_INTERRUPTED = 130


def cmd_backup(config: Config, args) -> int:
    report = BackupExecutor(config).execute()
    for warning in report.warnings:
        logger.warning(warning)
    return EXIT_OK


def cmd_restore(config: Config, args) -> int:
    report = RestoreExecutor(config).execute()
    if report.warnings:
        logger.warning(f"Restore finished with {len(report.warnings)} warning(s)")
    return EXIT_OK


def cmd_list(config: Config, args) -> int:
    storage = create_storage(config)
    try:
        backups = order_by_recency(storage.list())
    except OffsiteError as e:
        logger.error(f"Failed to list remote backups: {e}")
        return EXIT_FAILURE

    if not backups:
        print("No backups found")
        return EXIT_OK

    for obj in backups:
        size = f"{obj.size / 1024 / 1024:.2f} MB" if obj.size is not None else '-'
        modified = obj.modified.strftime('%Y-%m-%d %H:%M:%S') if obj.modified else '-'
        print(f"{obj.name}  {size:>12}  {modified}")
    return EXIT_OK


def cmd_schedule(config: Config, args) -> int:
    from offsite.scheduler import run_scheduler
    run_scheduler(config)
    return EXIT_OK


COMMANDS = {
    'backup': (cmd_backup, 'Run a backup now'),
    'restore': (cmd_restore, 'Restore the newest remote backup'),
    'list': (cmd_list, 'List remote backups, newest first'),
    'schedule': (cmd_schedule, 'Run backups on BACKUP_SCHEDULE until stopped'),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='offsite',
        description='Encrypted off-site backup of a database and directories to FTP/FTPS/SFTP'
    )
    parser.add_argument('--env-file', help='Configuration file (default: $OFFSITE_ENV_FILE or ./.env)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    for name, (_, help_text) in COMMANDS.items():
        subparsers.add_parser(name, help=help_text)

    return parser


@contextmanager
def _terminate_as_exit():
    """Turn SIGTERM into SystemExit so cleanup runs on every abort path."""
    def handler(signum, frame):
        raise SystemExit(128 + signum)

    try:
        previous = signal.signal(signal.SIGTERM, handler)
    except ValueError:
        # Not in the main thread
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one command.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_CONFIG

    try:
        config = load_config(args.env_file)
    except ConfigError as e:
        configure_logging(verbose=args.verbose)
        logger.error(str(e))
        return EXIT_CONFIG

    if args.command in ('backup', 'schedule'):
        try:
            os.makedirs(config.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Cannot create log directory {config.log_dir}: {e}", file=sys.stderr)

    operation = 'restore' if args.command == 'restore' else 'backup'
    configure_logging(config.log_dir, operation, args.verbose)
    logger.debug(f"Configuration: {safe_dump(config)}")

    handler, _ = COMMANDS[args.command]

    with _terminate_as_exit():
        try:
            return handler(config, args)
        except LockError as e:
            logger.error(str(e))
            return EXIT_LOCKED
        except OffsiteError:
            # Already reported by the executor
            return EXIT_FAILURE
        except KeyboardInterrupt:
            return EXIT_INTERRUPTED


def backup_main() -> int:
    """Entry point for offsite-backup."""
    return main(sys.argv[1:] + ['backup'])


def restore_main() -> int:
    """Entry point for offsite-restore."""
    return main(sys.argv[1:] + ['restore'])


if __name__ == '__main__':
    sys.exit(main())
