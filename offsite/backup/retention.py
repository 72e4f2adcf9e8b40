"""
Retention policy enforcement for remote backups.

Keeps the newest N backups on the remote store and deletes the rest. Only
names following the backup naming convention are considered; anything else
in the remote directory is left alone.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List

from offsite.errors import TransportError
from .storage import RemoteObject, RemoteStorage


logger = logging.getLogger(__name__)


@dataclass
class PruneResult:
    """Outcome of one prune() call."""

    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def order_by_recency(objects: List[RemoteObject]) -> List[RemoteObject]:
    """
    Order backup objects newest first.

    The date embedded in the name decides first, then the server's
    modification time where it reports one. Remaining ties keep the listing
    order: an entry listed earlier counts as newer.

    Args:
        objects: Listing entries (non-backup names are dropped)

    Returns:
        Backup objects, newest first
    """
    backups = [obj for obj in objects if obj.is_backup]
    return sorted(
        backups,
        key=lambda obj: (
            obj.backup_date or date.min,
            obj.modified or datetime.min,
            -obj.position,
        ),
        reverse=True,
    )


class RetentionManager:
    """
    Enforces the retention count on a remote store.

    Pruning runs after a successful upload and is best-effort: failures are
    logged and returned, never raised.
    """

    def __init__(self, storage: RemoteStorage):
        """
        Args:
            storage: Remote storage handler
        """
        self.storage = storage

    def prune(self, retention_count: int) -> PruneResult:
        """
        Delete all but the newest retention_count backups.

        Deletions happen one at a time, oldest first.

        Args:
            retention_count: Number of backups to keep (>= 1)

        Returns:
            PruneResult with kept, deleted and failed names

        Raises:
            ValueError: If retention_count is below 1
        """
        if retention_count < 1:
            raise ValueError(f"Retention count must be at least 1, got {retention_count}")

        result = PruneResult()
        logger.info(f"Managing backup retention (keep {retention_count})")

        try:
            backups = order_by_recency(self.storage.list())
        except TransportError as e:
            message = f"Failed to list remote backups for retention: {e}"
            logger.error(message)
            result.errors.append(message)
            return result

        result.kept = [obj.name for obj in backups[:retention_count]]
        expired = backups[retention_count:]

        if not expired:
            logger.info(f"{len(backups)} remote backups, nothing to prune")
            return result

        # Oldest first
        for obj in reversed(expired):
            logger.info(f"Deleting old backup: {obj.name}")
            try:
                self.storage.delete(obj.name)
                result.deleted.append(obj.name)
            except TransportError as e:
                message = f"Failed to delete old backup {obj.name}: {e}"
                logger.error(message)
                result.errors.append(message)

        logger.info(
            f"Retention complete. Kept: {len(result.kept)}, "
            f"deleted: {len(result.deleted)}, errors: {len(result.errors)}"
        )
        return result
