"""
Retention policy enforcement for backups.

Deletes local artifacts whose modification time falls before the retention
window. Each deletion is independent: a failure is logged and collected,
and pruning carries on with the remaining artifacts.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any

from .storage import LocalStorage, StorageError


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for the local artifact directory.

    An artifact is deleted when modified < now - retention_days, so an
    artifact exactly retention_days old is kept.
    """

    def __init__(self, storage: LocalStorage, retention_days: int = 30):
        """
        Initialize retention manager.

        Args:
            storage: Local artifact storage
            retention_days: Retention window in days
        """
        self.storage = storage
        self.retention_days = retention_days
        self.logs = []

    def prune(self) -> Dict[str, Any]:
        """
        Delete artifacts older than the retention window.

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': List[str],
                'kept': int,
                'errors': List[str],
                'cutoff': str,
                'logs': List[str]
            }
        """
        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        self._log(f"Local retention: {self.retention_days} days (cutoff {cutoff_date.isoformat()})")

        summary = {
            'deleted': [],
            'kept': 0,
            'errors': [],
            'cutoff': cutoff_date.isoformat()
        }

        try:
            archives = self.storage.list_archives()
        except StorageError as e:
            self._log(f"Failed to list local files: {e}")
            summary['errors'].append(str(e))
            summary['logs'] = self.logs
            return summary

        for archive in archives:
            if archive['modified'] >= cutoff_date:
                summary['kept'] += 1
                continue

            try:
                self.storage.delete(archive['name'])
                summary['deleted'].append(archive['name'])
                self._log(f"Deleted old backup: {archive['name']}")
            except StorageError as e:
                error_msg = f"Failed to delete local file {archive['name']}: {e}"
                self._log(error_msg, level=logging.WARNING)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Kept: {summary['kept']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
