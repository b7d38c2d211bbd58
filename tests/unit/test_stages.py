"""
Unit tests for the stage policy runner (landkeeper/backup/stages.py).
"""

import logging

import pytest

from landkeeper.backup.stages import (
    StageRunner,
    StageFailure,
    BACKUP_STAGES,
    RESTORE_STAGES,
    FATAL,
    BEST_EFFORT
)


def _boom():
    raise RuntimeError("boom")


class TestPolicyTables:
    """Test the stage policy tables."""

    def test_backup_pipeline_order_and_policy(self):
        assert list(BACKUP_STAGES) == [
            'dump', 'metadata_snapshot', 'auxiliary_snapshot', 'config_snapshot',
            'compress', 'remote_upload', 'local_cleanup', 'retention_prune', 'integrity_verify'
        ]
        assert BACKUP_STAGES['remote_upload'] == BEST_EFFORT
        assert BACKUP_STAGES['integrity_verify'] == FATAL

    def test_restore_pipeline_policy(self):
        assert RESTORE_STAGES['validate'] == FATAL
        assert RESTORE_STAGES['verify'] == BEST_EFFORT
        assert RESTORE_STAGES['cleanup'] == BEST_EFFORT


class TestStageRunner:
    """Test StageRunner."""

    def test_successful_stage_returns_value(self):
        runner = StageRunner(BACKUP_STAGES)

        assert runner.run('dump', lambda x, y=0: x + y, 1, y=2) == 3
        assert runner.completed == ['dump']
        assert runner.warnings == []

    def test_fatal_stage_raises_stage_failure(self):
        runner = StageRunner(BACKUP_STAGES)

        with pytest.raises(StageFailure) as exc_info:
            runner.run('compress', _boom)

        assert exc_info.value.stage == 'compress'
        assert isinstance(exc_info.value.error, RuntimeError)
        assert str(exc_info.value) == 'boom'
        assert runner.completed == []

    def test_best_effort_stage_records_warning(self):
        runner = StageRunner(BACKUP_STAGES)

        result = runner.run('remote_upload', _boom, default={'success': False})

        assert result == {'success': False}
        assert runner.warnings == [{'stage': 'remote_upload', 'message': 'boom'}]
        assert runner.completed == []

    def test_unknown_stage_raises_key_error(self):
        runner = StageRunner(BACKUP_STAGES)

        with pytest.raises(KeyError):
            runner.run('teleport', lambda: None)

    def test_skip_records_stage(self):
        runner = StageRunner(BACKUP_STAGES)

        runner.skip('remote_upload', 'upload disabled')

        assert runner.skipped == ['remote_upload']

    def test_skip_unknown_stage(self):
        with pytest.raises(KeyError):
            StageRunner(RESTORE_STAGES).skip('dump', 'not a restore stage')

    def test_warn_uses_log_callback(self):
        messages = []
        runner = StageRunner(BACKUP_STAGES, log=lambda message, level=logging.INFO: messages.append((level, message)))

        runner.warn('integrity_verify', 'archive is small')

        assert runner.warnings == [{'stage': 'integrity_verify', 'message': 'archive is small'}]
        assert messages == [(logging.WARNING, 'Warning: archive is small')]
