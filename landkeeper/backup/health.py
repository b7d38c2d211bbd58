"""
Read-only health diagnostics for the backup storage location.
"""

from datetime import datetime, timezone
from typing import Dict, Any, List

from .compression import format_bytes
from .storage import LocalStorage, StorageError


HEALTHY = 'healthy'
WARNING = 'warning'
DEGRADED = 'degraded'
CRITICAL = 'critical'

RECENT_BACKUP_COUNT = 5


class BackupHealthChecker:
    """
    Inspects the artifact directory and reports freshness and size problems.

    Report statuses: healthy, degraded (stale or suspiciously small
    artifacts) and critical (missing directory or no artifacts).
    """

    def __init__(self, storage_path: str, max_age_hours: int = 48, min_size_bytes: int = 1024):
        self.storage = LocalStorage(storage_path, create=False)
        self.max_age_hours = max_age_hours
        self.min_size_bytes = min_size_bytes

    @classmethod
    def from_config(cls, config):
        return cls(
            config.BACKUP_STORAGE_PATH,
            max_age_hours=config.HEALTH_MAX_AGE_HOURS,
            min_size_bytes=config.HEALTH_MIN_SIZE_BYTES
        )

    def check(self) -> Dict[str, Any]:
        """
        Run all checks.

        Returns:
            {'timestamp', 'status', 'checks': [{'check', 'status', 'message'}], 'backups'}
        """
        report = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'status': HEALTHY,
            'checks': [],
        }

        if not self.storage.exists():
            self._add(report, 'backup_directory', CRITICAL, "Backup directory does not exist")
            report['status'] = CRITICAL
        else:
            self._add(report, 'backup_directory', HEALTHY, "Backup directory exists")

        try:
            backups = self.recent_backups()
        except StorageError as e:
            self._add(report, 'recent_backups', CRITICAL, f"Cannot list backups: {e}")
            report['status'] = CRITICAL
            report['backups'] = []
            return report
        report['backups'] = [self._describe(b) for b in backups]

        if not backups:
            self._add(report, 'recent_backups', CRITICAL, "No recent backups found")
            report['status'] = CRITICAL
        else:
            age_hours = (datetime.now() - backups[0]['modified']).total_seconds() / 3600
            message = f"Latest backup is {round(age_hours)} hours old"
            if age_hours > self.max_age_hours:
                self._add(report, 'backup_freshness', WARNING, message)
                self._degrade(report)
            else:
                self._add(report, 'backup_freshness', HEALTHY, message)

        suspicious = [b for b in backups if b['size'] < self.min_size_bytes]
        if suspicious:
            self._add(
                report, 'backup_sizes', WARNING,
                f"{len(suspicious)} backups seem unusually small"
            )
            self._degrade(report)

        return report

    def recent_backups(self) -> List[Dict[str, Any]]:
        """The newest artifacts by modification time."""
        archives = self.storage.list_archives()
        archives.sort(key=lambda a: a['modified'], reverse=True)
        return archives[:RECENT_BACKUP_COUNT]

    @staticmethod
    def _describe(archive):
        return {
            'name': archive['name'],
            'size': archive['size'],
            'formatted_size': format_bytes(archive['size']),
            'modified': archive['modified'].isoformat()
        }

    @staticmethod
    def _add(report, check, status, message):
        report['checks'].append({'check': check, 'status': status, 'message': message})

    @staticmethod
    def _degrade(report):
        if report['status'] == HEALTHY:
            report['status'] = DEGRADED
