"""
Retention classification and enforcement.

Classification is a pure function of the calendar date. Enforcement keeps
the newest N snapshots of each class on the remote store, ordered by the
timestamp embedded in the snapshot name.
"""

import logging
from datetime import date
from typing import Dict, List

logger = logging.getLogger(__name__)

# Fixed order: also the restore search order
RETENTION_CLASSES = ('daily', 'weekly', 'monthly')


def classify_retention(day: date) -> str:
    """
    Assign a retention class to a backup taken on `day`.

    The 1st of the month is monthly even when it falls on a Sunday;
    other Sundays are weekly; everything else is daily.
    """
    if day.day == 1:
        return 'monthly'
    if day.isoweekday() == 7:
        return 'weekly'
    return 'daily'


class RetentionManager:
    """
    Enforces keep-counts on the remote retention buckets.
    """

    def __init__(self):
        self.logs = []

    def prune(self, storage, retention_class: str, keep_count: int) -> List:
        """
        Delete all but the newest `keep_count` snapshots of a class.

        A bucket that does not exist or holds fewer snapshots than
        `keep_count` is left alone. Running prune twice without new
        snapshots deletes nothing the second time.

        Args:
            storage: RemoteStorage backend
            retention_class: 'daily', 'weekly' or 'monthly'
            keep_count: Number of snapshots to keep (>= 1)

        Returns:
            List of RemoteSnapshot objects that were deleted

        Raises:
            ValueError: If retention_class or keep_count is invalid
            StorageError: If listing or deleting fails
        """
        if retention_class not in RETENTION_CLASSES:
            raise ValueError(f"Invalid retention class: {retention_class}")
        if keep_count < 1:
            raise ValueError(f"keep_count must be at least 1, got: {keep_count}")

        # list_snapshots returns newest first
        snapshots = storage.list_snapshots(retention_class)
        to_delete = snapshots[keep_count:]

        deleted = []
        for snapshot in to_delete:
            storage.delete(snapshot)
            deleted.append(snapshot)
            self._log(f"Deleted {retention_class} snapshot: {snapshot.name}")

        self._log(f"{retention_class}: keeping newest {keep_count} backups ({len(deleted)} removed)")
        return deleted

    def enforce_all(self, storage, policy: Dict[str, int]) -> Dict[str, object]:
        """
        Prune every retention class.

        A failure in one class is recorded and the remaining classes are
        still pruned; the snapshot of the current run is already delivered.

        Args:
            storage: RemoteStorage backend
            policy: Mapping of retention class to keep-count

        Returns:
            Dict with 'deleted' (class -> names) and 'errors' (list of messages)
        """
        summary = {'deleted': {}, 'errors': []}

        for retention_class in RETENTION_CLASSES:
            try:
                deleted = self.prune(storage, retention_class, policy[retention_class])
                summary['deleted'][retention_class] = [s.name for s in deleted]
            except Exception as e:
                error_msg = f"Failed to apply {retention_class} retention: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)

        return summary

    def _log(self, message: str):
        self.logs.append(message)
        logger.info(message)
