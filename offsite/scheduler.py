"""
APScheduler daemon for unattended backups.

An alternative to a cron entry: runs a backup on the BACKUP_SCHEDULE cron
expression in the foreground until stopped.
"""

import logging
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from offsite.config import Config
from offsite.errors import LockError, OffsiteError
from offsite.backup.executor import RunReport, execute_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'offsite_backup'


def run_scheduled_backup(config: Config) -> Optional[RunReport]:
    """
    Job function: run one backup.

    Failures are logged and swallowed so the daemon keeps its schedule; the
    next run starts from a clean working directory.

    Returns:
        RunReport on success, None otherwise
    """
    try:
        return execute_backup(config)
    except LockError as e:
        logger.warning(f"Skipping scheduled backup: {e}")
    except OffsiteError as e:
        logger.error(f"Scheduled backup failed: {e}")
    return None


def init_scheduler(config: Config) -> BlockingScheduler:
    """
    Create the scheduler with the backup job registered.

    Args:
        config: Run configuration (BACKUP_SCHEDULE is a 5-field cron expression)
    """
    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults)

    try:
        trigger = CronTrigger.from_crontab(config.schedule)
    except ValueError as e:
        raise OffsiteError(f"Invalid BACKUP_SCHEDULE '{config.schedule}': {e}") from e

    scheduler.add_job(
        func=run_scheduled_backup,
        trigger=trigger,
        args=[config],
        id=BACKUP_JOB_ID,
        name='Scheduled Backup',
        replace_existing=True
    )

    return scheduler


def run_scheduler(config: Config):
    """
    Run the scheduler in the foreground until interrupted.
    """
    scheduler = init_scheduler(config)
    logger.info(f"Scheduler started (schedule: '{config.schedule}')")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        if scheduler.running:
            logger.info("Stopping scheduler, waiting for a running backup to finish...")
            scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")
