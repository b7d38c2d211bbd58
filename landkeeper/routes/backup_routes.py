"""
Backup operations routes - artifact listing, health and manual trigger.
"""

from datetime import datetime
from flask import Blueprint, current_app, jsonify

from landkeeper.backup.compression import format_bytes
from landkeeper.backup.executor import run_backup_cycle
from landkeeper.backup.health import BackupHealthChecker, CRITICAL
from landkeeper.backup.storage import LocalStorage, StorageError
from landkeeper.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _config():
    return current_app.config['LANDKEEPER_CONFIG']


@bp.route('/', methods=['GET'])
def list_backups():
    """
    Get list of local backup artifacts, newest first.

    Returns:
        JSON array of artifacts with name, size and age
    """
    storage = LocalStorage(_config().BACKUP_STORAGE_PATH, create=False)

    try:
        archives = storage.list_archives()
    except StorageError as e:
        return jsonify({'error': str(e)}), 500

    now = datetime.now()
    backups_data = []
    for archive in archives:
        backups_data.append({
            'name': archive['name'],
            'size_bytes': archive['size'],
            'size': format_bytes(archive['size']),
            'modified': archive['modified'].isoformat(),
            'age_hours': round((now - archive['modified']).total_seconds() / 3600, 1)
        })

    return jsonify(backups_data)


@bp.route('/health', methods=['GET'])
def backup_health():
    """
    Get the backup health report.

    Returns:
        JSON health report; 503 when the status is critical
    """
    report = BackupHealthChecker.from_config(_config()).check()
    status_code = 503 if report['status'] == CRITICAL else 200
    return jsonify(report), status_code


@bp.route('/', methods=['POST'])
def run_backup():
    """
    Run one backup cycle synchronously.

    Returns:
        JSON backup result; 500 when the cycle failed
    """
    current_app.logger.info("Manual backup requested over HTTP")
    result = run_backup_cycle(_config())
    return jsonify(result), 200 if result['success'] else 500


@bp.route('/schedule', methods=['GET'])
def get_schedule():
    """
    Get scheduler status and scheduled jobs.
    """
    return jsonify({
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'jobs': get_scheduled_jobs()
    })
