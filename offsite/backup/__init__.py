"""
Backup module for offsite.

This module handles the backup and restore pipeline including:
- Database dumps
- Archiving
- Remote storage (FTP, FTPS and SFTP)
- Retention policy enforcement
- Restore
- Execution orchestration
"""

from .executor import BackupExecutor, RestoreExecutor, RunReport
from .dump import MySQLDumpProvider
from .compression import create_archive, extract_archive
from .storage import FTPStorage, SFTPStorage, RemoteObject, create_storage
from .retention import RetentionManager, order_by_recency
from .restore import RestorePipeline

__all__ = [
    'BackupExecutor',
    'RestoreExecutor',
    'RunReport',
    'MySQLDumpProvider',
    'create_archive',
    'extract_archive',
    'FTPStorage',
    'SFTPStorage',
    'RemoteObject',
    'create_storage',
    'RetentionManager',
    'order_by_recency',
    'RestorePipeline'
]
