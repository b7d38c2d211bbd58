"""
Unit tests for scheduler (landkeeper/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

from unittest.mock import MagicMock, patch

import pytest

from landkeeper import scheduler as scheduler_module


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.scheduler_config = None

    @patch('landkeeper.scheduler.BackgroundScheduler')
    def test_init_scheduler(self, mock_scheduler_class, test_config):
        """Test scheduler initialization."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        result = scheduler_module.init_scheduler(test_config)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.scheduler_config == test_config

        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['job_defaults'] == {
            'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 300
        }
        assert call_kwargs['timezone'] == test_config.SCHEDULER_TIMEZONE

        job_kwargs = mock_scheduler.add_job.call_args[1]
        assert job_kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert job_kwargs['func'] == scheduler_module._execute_backup_wrapper

    @patch('landkeeper.scheduler.BlockingScheduler')
    @patch('landkeeper.scheduler.BackgroundScheduler')
    def test_init_blocking_scheduler(self, mock_background, mock_blocking, test_config):
        scheduler_module.init_scheduler(test_config, blocking=True)

        mock_blocking.assert_called_once()
        mock_background.assert_not_called()

    @patch('landkeeper.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, test_config):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler(test_config)
        result2 = scheduler_module.init_scheduler(test_config)

        assert result1 == result2
        mock_scheduler_class.assert_called_once()

    def test_real_cron_job(self, test_config):
        """The cron expression produces a real APScheduler job."""
        scheduler_module.init_scheduler(test_config)

        jobs = scheduler_module.get_scheduled_jobs()

        assert len(jobs) == 1
        assert jobs[0]['id'] == 'scheduled_backup'
        assert jobs[0]['name'] == f"Backup: {test_config.BACKUP_SCHEDULE_CRON}"
        assert 'cron' in jobs[0]['trigger']


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.scheduler_config = None

    def test_start_scheduler(self):
        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None

    def test_is_scheduler_running(self):
        assert scheduler_module.is_scheduler_running() is False
        self.mock_scheduler.running = True
        assert scheduler_module.is_scheduler_running() is True

    def test_trigger_backup_now(self):
        self.mock_scheduler.add_job.return_value.id = 'manual_1'

        job_id = scheduler_module.trigger_backup_now()

        assert job_id == 'manual_1'
        assert self.mock_scheduler.add_job.call_args[1]['name'] == 'Manual backup'

    def test_trigger_backup_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError):
            scheduler_module.trigger_backup_now()

    def test_get_scheduled_jobs_without_scheduler(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []


class TestExecuteBackupWrapper:
    """Test the scheduled job body."""

    def teardown_method(self):
        scheduler_module.scheduler_config = None

    @patch('landkeeper.scheduler.run_backup_cycle')
    def test_runs_backup_cycle_with_config(self, mock_run, test_config):
        scheduler_module.scheduler_config = test_config
        mock_run.return_value = {'success': True, 'backup': 'backup-20240115-030000.tar.gz'}

        scheduler_module._execute_backup_wrapper()

        mock_run.assert_called_once_with(test_config)

    @patch('landkeeper.scheduler.run_backup_cycle')
    def test_failure_result_is_logged(self, mock_run, test_config, caplog):
        scheduler_module.scheduler_config = test_config
        mock_run.return_value = {'success': False, 'error': 'boom', 'stage': 'dump'}

        scheduler_module._execute_backup_wrapper()

        assert 'Scheduled backup failed at stage dump: boom' in caplog.text

    @patch('landkeeper.scheduler.run_backup_cycle', side_effect=RuntimeError('crash'))
    def test_exception_does_not_propagate(self, mock_run, test_config):
        scheduler_module.scheduler_config = test_config

        scheduler_module._execute_backup_wrapper()

        mock_run.assert_called_once()
