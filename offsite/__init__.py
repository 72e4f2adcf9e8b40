import os
import sys
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'

LOG_FORMAT = '[%(levelname)s] %(asctime)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(log_dir=None, operation=None, verbose=False):
    """
    Configure logging for one run.

    Lines go to stdout and, if log_dir exists, to {log_dir}/{operation}.log.

    Args:
        log_dir: Log directory (mirrored file only written if it exists)
        operation: 'backup' or 'restore' (names the log file)
        verbose: Log DEBUG messages too
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    # File handler
    if log_dir and operation and os.path.isdir(log_dir):
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, f'{operation}.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Configure package logger
    logger = logging.getLogger('offsite')
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(log_level)

    # Third-party chatter stays at WARNING
    logging.getLogger('paramiko').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.INFO if verbose else logging.WARNING)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
