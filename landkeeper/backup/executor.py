"""
Backup manager - orchestrates the complete backup workflow.

Workflow:
1. Dump the database into a staging directory (mongodump)
2. Write backup-metadata.json
3. Write media-inventory.json (if upload is enabled and a media bucket is set)
4. Write application-config.json with live collection counts
5. Compress the staging directory into backup-<timestamp>.tar.gz
6. Upload the archive to S3 (if enabled)
7. Remove the staging directory
8. Apply the retention policy
9. Verify the archive
10. Send a log-based notification

Stage failures follow the policy table in stages.BACKUP_STAGES.
"""

import json
import logging
import platform
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from .compression import (
    ARCHIVE_EXTENSION, IntegrityError, compress_folder, format_bytes,
    generate_backup_name, get_archive_size
)
from .mongo import MongoToolExecutor, extract_database_name
from .retention import RetentionManager
from .stages import BACKUP_STAGES, StageFailure, StageRunner
from .storage import LocalStorage, S3Storage
from ..config import ConfigurationError
from ..database import DatabaseSession


logger = logging.getLogger(__name__)

BACKUP_VERSION = '2.3.0'
METADATA_FILENAME = 'backup-metadata.json'
APPLICATION_CONFIG_FILENAME = 'application-config.json'
MEDIA_INVENTORY_FILENAME = 'media-inventory.json'
MIN_EXPECTED_ARCHIVE_BYTES = 1024


class BackupInProgressError(Exception):
    """Raised when another run already owns the backup name."""
    pass


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def system_info() -> Dict[str, str]:
    return {
        'platform': sys.platform,
        'runtimeVersion': platform.python_version(),
        'arch': platform.machine(),
    }


class BackupManager:
    """
    Runs one backup cycle end to end.

    The database session is owned by the caller; the manager only uses it
    and never closes it.
    """

    def __init__(self, config, session, tools: Optional[MongoToolExecutor] = None,
                 remote_storage: Optional[S3Storage] = None,
                 media_storage: Optional[S3Storage] = None,
                 local_storage: Optional[LocalStorage] = None):
        """
        Initialize backup manager.

        Args:
            config: Configuration class (see landkeeper.config)
            session: DatabaseSession used for the config snapshot
            tools: MongoToolExecutor (built from config if None)
            remote_storage: S3Storage for uploads (built from config on demand)
            media_storage: S3Storage listing uploaded media (built from config on demand)
            local_storage: LocalStorage for artifacts (built from config if None)
        """
        self.config = config
        self.session = session
        self.tools = tools or MongoToolExecutor.from_config(config, session=session)
        self.remote_storage = remote_storage
        self.media_storage = media_storage
        self.storage = local_storage or LocalStorage(config.BACKUP_STORAGE_PATH)
        self.database = extract_database_name(
            config.MONGODB_URI, config.MONGODB_NAME, config.DEFAULT_DATABASE_NAME
        )
        self.logs = []
        self._owns_staging = False

    @property
    def upload_enabled(self) -> bool:
        return bool(self.config.BACKUP_UPLOAD_ENABLED)

    def create_backup(self) -> Dict[str, Any]:
        """
        Execute one backup cycle.

        Returns:
            On success: {'success': True, 'backup', 'metadata', 'remote_upload',
            'local_path', 'timestamp', 'collections', 'size_bytes', 'size',
            'duration_ms', 'retention', 'warnings', 'logs'}
            On failure: {'success': False, 'error', 'stage', 'logs'}
        """
        started = time.monotonic()
        self.logs = []
        self._owns_staging = False
        backup_name = generate_backup_name()
        staging = Path(self.storage.get_full_path(backup_name))
        runner = StageRunner(BACKUP_STAGES, log=self._log)

        self._log(f"Starting backup: {backup_name} (database: {self.database})")

        try:
            dump = runner.run('dump', self._dump, staging)

            metadata = runner.run('metadata_snapshot', self._write_metadata, staging, backup_name)

            if self.upload_enabled and self.config.MEDIA_S3_BUCKET:
                metadata['media_inventory'] = runner.run(
                    'auxiliary_snapshot', self._write_media_inventory, staging,
                    default={'success': False}
                )
            else:
                runner.skip('auxiliary_snapshot', "upload disabled or no media bucket configured")

            runner.run('config_snapshot', self._write_application_config, staging)

            archive_path = runner.run('compress', self._compress, staging, backup_name)

            remote_upload = None
            if self.upload_enabled:
                remote_upload = runner.run('remote_upload', self._upload, archive_path)
                if remote_upload is None:
                    remote_upload = {'success': False, 'error': runner.warnings[-1]['message']}
            else:
                runner.skip('remote_upload', "upload disabled")

            runner.run('local_cleanup', self.storage.remove_tree, str(staging))

            retention = runner.run('retention_prune', self._apply_retention, runner)

            size_bytes = runner.run('integrity_verify', self._verify_integrity, archive_path, runner)

        except StageFailure as e:
            self._log(f"Backup failed at stage {e.stage}: {e.error}", level=logging.ERROR)
            self._remove_staging(staging)
            result = {
                'success': False,
                'error': str(e.error),
                'stage': e.stage,
                'logs': self.logs
            }
            self._notify(result, 'FAILED')
            return result

        except Exception as e:
            logger.exception("Unexpected error during backup")
            self._remove_staging(staging)
            result = {
                'success': False,
                'error': str(e),
                'stage': None,
                'logs': self.logs
            }
            self._notify(result, 'FAILED')
            return result

        result = {
            'success': True,
            'backup': f"{backup_name}{ARCHIVE_EXTENSION}",
            'metadata': metadata,
            'remote_upload': remote_upload,
            'local_path': archive_path,
            'timestamp': _utc_now_iso(),
            'collections': dump.collections,
            'size_bytes': size_bytes,
            'size': format_bytes(size_bytes),
            'duration_ms': int((time.monotonic() - started) * 1000),
            'retention': retention,
            'warnings': runner.warnings,
            'logs': self.logs
        }

        self._log(f"Backup completed successfully: {result['backup']}")
        self._notify(result, 'SUCCESS')
        return result

    def _dump(self, staging: Path):
        if not self.config.MONGODB_URI:
            raise ConfigurationError("MONGODB_URI environment variable is required")

        archive = Path(self.storage.get_full_path(f"{staging.name}{ARCHIVE_EXTENSION}"))
        if archive.exists():
            raise BackupInProgressError(f"Backup {archive.name} already exists")
        try:
            staging.mkdir(parents=True)
        except FileExistsError:
            raise BackupInProgressError(f"Backup {staging.name} is already in progress")
        self._owns_staging = True

        self._log(f"Executing MongoDB dump for database: {self.database}")
        dump = self.tools.dump(self.config.MONGODB_URI, str(staging), self.database)
        self._log(
            f"MongoDB dump completed: {len(dump.collections)} collections, "
            f"{dump.file_count} files, {dump.total_size}"
        )
        if dump.collections:
            self._log(f"Collections: {', '.join(dump.collections)}")
        return dump

    def _write_metadata(self, staging: Path, backup_name: str) -> Dict[str, Any]:
        metadata = {
            'name': backup_name,
            'timestamp': _utc_now_iso(),
            'database': self.database,
            'environment': self.config.ENVIRONMENT,
            'version': BACKUP_VERSION,
            'system': system_info()
        }
        self._write_json(staging / METADATA_FILENAME, metadata)
        return metadata

    def _write_media_inventory(self, staging: Path) -> Dict[str, Any]:
        """
        Record a point-in-time listing of uploaded media objects.

        The listing is informational; restores never write it back.
        """
        self._log("Backing up media inventory...")
        if self.media_storage is None:
            self.media_storage = S3Storage.from_config(
                self.config,
                bucket_name=self.config.MEDIA_S3_BUCKET,
                prefix=self.config.MEDIA_S3_PREFIX
            )

        objects = self.media_storage.list_objects(
            prefix=self.config.MEDIA_S3_PREFIX,
            limit=self.config.MEDIA_INVENTORY_LIMIT
        )

        inventory = {
            'resources': [
                {
                    'key': obj['Key'],
                    'size': obj['Size'],
                    'lastModified': obj['LastModified'].isoformat()
                }
                for obj in objects
            ],
            'totalCount': len(objects),
            'backupTimestamp': _utc_now_iso(),
            'bucket': self.media_storage.bucket_name,
            'prefix': self.config.MEDIA_S3_PREFIX
        }
        self._write_json(staging / MEDIA_INVENTORY_FILENAME, inventory)

        self._log(f"Media inventory backed up: {len(objects)} resources")
        return {'success': True, 'resource_count': len(objects)}

    def _write_application_config(self, staging: Path) -> Dict[str, Any]:
        self.session.ensure_connected()

        collection_stats = {}
        collection_errors = {}
        for name in self.session.list_collections(self.database):
            try:
                collection_stats[name] = self.session.count_documents(self.database, name)
            except Exception as e:
                self._log(f"Failed to count documents for collection {name}: {e}", level=logging.WARNING)
                collection_errors[name] = str(e)

        app_config = {
            'environment': self.config.ENVIRONMENT,
            'runtimeVersion': platform.python_version(),
            'platform': sys.platform,
            'backupVersion': BACKUP_VERSION,
            'timestamp': _utc_now_iso(),
            'collections': collection_stats,
            'collectionErrors': collection_errors,
            'auxiliaryStoreConfigured': bool(self.config.MEDIA_S3_BUCKET),
            'cacheConfigured': bool(self.config.REDIS_URL)
        }
        self._write_json(staging / APPLICATION_CONFIG_FILENAME, app_config)

        self._log(f"Application config backed up ({len(collection_stats)} collections)")
        return app_config

    def _compress(self, staging: Path, backup_name: str) -> str:
        self._log("Compressing backup...")
        archive_path = compress_folder(
            str(staging),
            self.storage.get_full_path(f"{backup_name}{ARCHIVE_EXTENSION}")
        )
        self._log(f"Compression completed: {format_bytes(get_archive_size(archive_path))}")
        return archive_path

    def _upload(self, archive_path: str) -> Dict[str, Any]:
        self._log("Uploading to S3")
        if self.remote_storage is None:
            self.remote_storage = S3Storage.from_config(self.config)

        s3_key = self.remote_storage.upload(archive_path)
        self._log(f"Uploaded to S3: {s3_key}")
        return {
            'success': True,
            'bucket': self.remote_storage.bucket_name,
            'key': s3_key,
            'url': f"s3://{self.remote_storage.bucket_name}/{s3_key}"
        }

    def _apply_retention(self, runner: StageRunner) -> Dict[str, Any]:
        summary = RetentionManager(self.storage, self.config.BACKUP_RETENTION_DAYS).prune()
        for error in summary['errors']:
            runner.warn('retention_prune', error)
        return {
            'deleted': summary['deleted'],
            'kept': summary['kept'],
            'errors': summary['errors']
        }

    def _verify_integrity(self, archive_path: str, runner: StageRunner) -> int:
        self._log("Verifying backup integrity...")
        size = get_archive_size(archive_path)

        if size == 0:
            raise IntegrityError(f"Backup file is empty: {archive_path}")

        if size < MIN_EXPECTED_ARCHIVE_BYTES:
            runner.warn('integrity_verify', f"Backup file seems unusually small: {format_bytes(size)}")

        self._log(f"Backup verification passed: {format_bytes(size)}")
        return size

    def _remove_staging(self, staging: Path):
        if not self._owns_staging:
            return
        try:
            self.storage.remove_tree(str(staging))
        except OSError as e:
            self._log(f"Warning: Failed to cleanup staging directory: {e}", level=logging.WARNING)

    def _notify(self, result: Dict[str, Any], status: str):
        """Log-based notification; always fires."""
        if status == 'SUCCESS':
            self._log(f"Backup notification: SUCCESS - {result['backup']} ({self.config.ENVIRONMENT})")
        else:
            self._log(f"Backup notification: FAILED - {result['error']}", level=logging.ERROR)

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]):
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

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


def run_backup_cycle(config) -> Dict[str, Any]:
    """
    Run one backup cycle with a session opened and closed around it.

    Used by the CLI runner, the scheduler and the HTTP trigger.

    Args:
        config: Configuration class

    Returns:
        Result dict from BackupManager.create_backup()
    """
    session = DatabaseSession(
        config.MONGODB_URI,
        server_selection_timeout_ms=config.MONGO_SERVER_SELECTION_TIMEOUT_MS
    )
    try:
        return BackupManager(config, session).create_backup()
    finally:
        session.close()
