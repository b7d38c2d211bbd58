"""
Unit tests for the backup HTTP routes (landkeeper/routes/backup_routes.py).
"""

from unittest.mock import patch

from conftest import build_artifact


class TestAppHealth:
    """Test the liveness endpoint."""

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestListBackups:
    """Test GET /api/backups/."""

    def test_empty(self, client):
        response = client.get('/api/backups/')

        assert response.status_code == 200
        assert response.get_json() == []

    def test_lists_artifacts(self, client, test_config):
        build_artifact(test_config.BACKUP_STORAGE_PATH, 'backup-20240101-030000')
        build_artifact(test_config.BACKUP_STORAGE_PATH, 'backup-20240102-030000')

        data = client.get('/api/backups/').get_json()

        assert [b['name'] for b in data] == [
            'backup-20240102-030000.tar.gz', 'backup-20240101-030000.tar.gz'
        ]
        assert data[0]['size_bytes'] > 0
        assert data[0]['age_hours'] >= 0
        assert 'modified' in data[0]


class TestBackupHealth:
    """Test GET /api/backups/health."""

    def test_critical_returns_503(self, client):
        response = client.get('/api/backups/health')

        assert response.status_code == 503
        assert response.get_json()['status'] == 'critical'

    def test_degraded_returns_200(self, client, test_config):
        # A freshly built test artifact is far below the size threshold
        build_artifact(test_config.BACKUP_STORAGE_PATH, 'backup-20240101-030000')

        response = client.get('/api/backups/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'degraded'


class TestRunBackup:
    """Test POST /api/backups/."""

    @patch('landkeeper.routes.backup_routes.run_backup_cycle')
    def test_success(self, mock_run, client, test_config):
        mock_run.return_value = {'success': True, 'backup': 'backup-20240115-030000.tar.gz'}

        response = client.post('/api/backups/')

        assert response.status_code == 200
        assert response.get_json()['backup'] == 'backup-20240115-030000.tar.gz'
        mock_run.assert_called_once_with(test_config)

    @patch('landkeeper.routes.backup_routes.run_backup_cycle')
    def test_failure(self, mock_run, client):
        mock_run.return_value = {'success': False, 'error': 'boom', 'stage': 'dump', 'logs': []}

        response = client.post('/api/backups/')

        assert response.status_code == 500
        assert response.get_json()['stage'] == 'dump'


class TestSchedule:
    """Test GET /api/backups/schedule."""

    def test_stopped_scheduler(self, client):
        data = client.get('/api/backups/schedule').get_json()

        assert data == {'scheduler_status': 'stopped', 'jobs': []}
