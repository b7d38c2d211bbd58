"""
Unit tests for backup health checks (landkeeper/backup/health.py).
"""

import os
import time
from datetime import datetime, timedelta
from unittest.mock import patch

from freezegun import freeze_time

from landkeeper.backup.health import (
    BackupHealthChecker,
    HEALTHY,
    DEGRADED,
    CRITICAL,
    WARNING
)
from landkeeper.backup.storage import StorageError


FROZEN_NOW = datetime(2024, 2, 15, 12, 0, 0)


def _artifact(directory, name, age_hours, size=4096):
    path = directory / name
    path.write_bytes(b'x' * size)
    ts = time.mktime((FROZEN_NOW - timedelta(hours=age_hours)).timetuple())
    os.utime(path, (ts, ts))
    return path


def _check(report, name):
    return next(c for c in report['checks'] if c['check'] == name)


class TestBackupHealthChecker:
    """Test BackupHealthChecker.check."""

    def test_missing_directory_is_critical(self, tmp_path):
        report = BackupHealthChecker(str(tmp_path / 'missing')).check()

        assert report['status'] == CRITICAL
        assert _check(report, 'backup_directory')['status'] == CRITICAL
        assert _check(report, 'recent_backups')['status'] == CRITICAL
        assert report['backups'] == []
        assert not (tmp_path / 'missing').exists()

    def test_no_backups_is_critical(self, tmp_path):
        report = BackupHealthChecker(str(tmp_path)).check()

        assert report['status'] == CRITICAL
        assert _check(report, 'backup_directory')['status'] == HEALTHY
        assert _check(report, 'recent_backups')['message'] == 'No recent backups found'

    @freeze_time(FROZEN_NOW)
    def test_fresh_backups_are_healthy(self, tmp_path):
        _artifact(tmp_path, 'backup-20240215-030000.tar.gz', age_hours=9)
        _artifact(tmp_path, 'backup-20240214-030000.tar.gz', age_hours=33)

        report = BackupHealthChecker(str(tmp_path)).check()

        assert report['status'] == HEALTHY
        assert _check(report, 'backup_freshness')['message'] == 'Latest backup is 9 hours old'
        assert [b['name'] for b in report['backups']] == [
            'backup-20240215-030000.tar.gz', 'backup-20240214-030000.tar.gz'
        ]
        assert report['backups'][0]['formatted_size'] == '4 KB'

    @freeze_time(FROZEN_NOW)
    def test_stale_backup_degrades(self, tmp_path):
        _artifact(tmp_path, 'backup-20240210-030000.tar.gz', age_hours=120)

        report = BackupHealthChecker(str(tmp_path), max_age_hours=48).check()

        assert report['status'] == DEGRADED
        assert _check(report, 'backup_freshness')['status'] == WARNING

    @freeze_time(FROZEN_NOW)
    def test_small_backups_degrade(self, tmp_path):
        _artifact(tmp_path, 'backup-20240215-030000.tar.gz', age_hours=1, size=100)

        report = BackupHealthChecker(str(tmp_path), min_size_bytes=1024).check()

        assert report['status'] == DEGRADED
        assert _check(report, 'backup_sizes')['message'] == '1 backups seem unusually small'

    @freeze_time(FROZEN_NOW)
    def test_only_five_most_recent_by_mtime(self, tmp_path):
        # Names sort opposite to modification times
        for i in range(7):
            _artifact(tmp_path, f'backup-2024010{i}-030000.tar.gz', age_hours=i + 1)

        report = BackupHealthChecker(str(tmp_path)).check()

        assert [b['name'] for b in report['backups']] == [
            f'backup-2024010{i}-030000.tar.gz' for i in range(5)
        ]

    def test_from_config(self, test_config):
        checker = BackupHealthChecker.from_config(test_config)

        assert checker.max_age_hours == test_config.HEALTH_MAX_AGE_HOURS
        assert checker.min_size_bytes == test_config.HEALTH_MIN_SIZE_BYTES
        assert str(checker.storage.base_path) == test_config.BACKUP_STORAGE_PATH

    @patch('landkeeper.backup.health.LocalStorage.list_archives')
    def test_unreadable_directory_is_critical(self, mock_list, tmp_path):
        """A listing failure is reported instead of raised."""
        mock_list.side_effect = StorageError("Failed to list local backups: Permission denied")

        report = BackupHealthChecker(str(tmp_path)).check()

        assert report['status'] == CRITICAL
        assert report['backups'] == []
        check = _check(report, 'recent_backups')
        assert check['status'] == CRITICAL
        assert 'Permission denied' in check['message']
