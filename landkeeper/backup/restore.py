"""
Restore manager - rehydrates a database from a backup artifact.

Workflow:
1. Locate the artifact (local name, 'latest', s3://, remote:, http(s)://)
2. Extract it into <storage>/temp/<restore-id>
3. Validate backup-metadata.json and the database folder
4. Snapshot document counts of the target database
5. Run mongorestore and count the restored collections
6. Re-count and compare (unless skipped)
7. Remove the extraction directory and any downloaded archive

Concurrent restores into the same target database are not coordinated;
callers must not start one while another is running.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

from .compression import ARCHIVE_EXTENSION, extract_archive, format_bytes
from .executor import METADATA_FILENAME, MEDIA_INVENTORY_FILENAME
from .mongo import MongoToolExecutor, RestoreOptions, build_namespace_args
from .stages import RESTORE_STAGES, StageFailure, StageRunner
from .storage import LocalStorage, S3Storage, download_http, parse_s3_url
from ..config import ConfigurationError


logger = logging.getLogger(__name__)

REQUIRED_METADATA_FIELDS = ('timestamp', 'database', 'version')
MAX_LISTED_ALTERNATIVES = 5


class BackupValidationError(Exception):
    """Raised when an extracted artifact is not a valid backup."""
    pass


class BackupNotFoundError(Exception):
    """Raised when a backup identifier cannot be resolved."""
    pass


@dataclass
class RestoreSettings:
    """Caller options for one restore run."""
    target_database: Optional[str] = None
    drop: bool = False
    skip_verification: bool = False
    preserve_ids: bool = True
    ns_from: Optional[str] = None
    ns_to: Optional[str] = None
    ns_include: Optional[str] = None
    dry_run: bool = False
    include_media_inventory: bool = False


def generate_restore_id(now: Optional[datetime] = None) -> str:
    """Generate a restore ID, e.g. restore-2024-01-15T10-30-00-123Z."""
    now = now or datetime.now(timezone.utc)
    return f"restore-{now.strftime('%Y-%m-%dT%H-%M-%S-%f')[:-3]}Z"


class RestoreManager:
    """
    Runs one restore end to end.

    The database session is owned by the caller; the manager only uses it
    and never closes it.
    """

    def __init__(self, config, session, tools: Optional[MongoToolExecutor] = None,
                 local_storage: Optional[LocalStorage] = None,
                 remote_storage: Optional[S3Storage] = None):
        """
        Initialize restore manager.

        Args:
            config: Configuration class (see landkeeper.config)
            session: DatabaseSession used for snapshots and verification
            tools: MongoToolExecutor (built from config if None)
            local_storage: LocalStorage holding artifacts (built from config if None)
            remote_storage: S3Storage for remote artifacts (built from config on demand)
        """
        self.config = config
        self.session = session
        self.tools = tools or MongoToolExecutor.from_config(config, session=session)
        self.storage = local_storage or LocalStorage(config.BACKUP_STORAGE_PATH)
        self.remote_storage = remote_storage
        self.logs = []

    def list_backups(self) -> List[Dict[str, Any]]:
        """List local artifacts, newest first, with formatted sizes."""
        backups = []
        for archive in self.storage.list_archives():
            backups.append({
                'name': archive['name'],
                'size': format_bytes(archive['size']),
                'size_bytes': archive['size'],
                'modified': archive['modified'].isoformat()
            })
        return backups

    def restore(self, source: str, settings: Optional[RestoreSettings] = None) -> Dict[str, Any]:
        """
        Restore from a backup artifact.

        Args:
            source: 'latest', an artifact name (or part of one), s3://bucket/key,
                remote:<name> or an http(s) URL
            settings: RestoreSettings (defaults if None)

        Returns:
            On success: {'success': True, 'restore_id', 'source_database',
            'target_database', 'collections_restored', 'documents_restored',
            'duration_ms', 'backup_used', 'pre_restore_snapshot',
            'verification', 'warnings', 'logs'}
            On failure: {'success': False, 'error', 'restore_id', 'stage', 'logs'}
        """
        settings = settings or RestoreSettings()
        started = time.monotonic()
        self.logs = []
        restore_id = generate_restore_id()
        extract_path = self.storage.temp_path / restore_id
        downloads: List[str] = []
        runner = StageRunner(RESTORE_STAGES, log=self._log)

        self._log(f"Starting restore process: {restore_id}")
        self._log(f"Backup source: {source}")

        try:
            archive_path = runner.run('locate', self._locate, source, restore_id, downloads)

            runner.run('extract', self._extract, archive_path, extract_path)

            metadata = runner.run('validate', self._validate, extract_path)

            options = RestoreOptions(
                source_database=metadata['database'],
                target_database=settings.target_database,
                drop=settings.drop,
                preserve_ids=settings.preserve_ids,
                ns_from=settings.ns_from,
                ns_to=settings.ns_to,
                ns_include=settings.ns_include
            )
            # snapshot, execute and verify must all agree on where data lands
            target_database = options.target
            self._log(f"Target database: {target_database}")

            media_inventory = None
            if settings.include_media_inventory:
                media_inventory = self._summarize_media_inventory(extract_path, runner)

            if settings.dry_run:
                result = self._plan(restore_id, archive_path, extract_path, options, settings, runner)
                result['media_inventory'] = media_inventory
                return result

            snapshot = runner.run('pre_restore_snapshot', self._snapshot, target_database)

            outcome = runner.run('execute_restore', self._execute, extract_path, options)

            verification = None
            if settings.skip_verification:
                runner.skip('verify', "verification disabled")
            else:
                verification = runner.run('verify', self._verify, outcome, target_database, runner)

            result = {
                'success': True,
                'restore_id': restore_id,
                'source_database': metadata['database'],
                'target_database': target_database,
                'collections_restored': [c.to_dict() for c in outcome.collections],
                'documents_restored': outcome.total_documents,
                'duration_ms': int((time.monotonic() - started) * 1000),
                'backup_used': os.path.basename(archive_path),
                'backup_timestamp': metadata['timestamp'],
                'pre_restore_snapshot': snapshot,
                'verification': verification,
                'media_inventory': media_inventory,
                'warnings': runner.warnings,
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'logs': self.logs
            }
            self._log("Restore completed successfully")
            return result

        except StageFailure as e:
            self._log(f"Restore failed at stage {e.stage}: {e.error}", level=logging.ERROR)
            return {
                'success': False,
                'error': str(e.error),
                'restore_id': restore_id,
                'stage': e.stage,
                'logs': self.logs
            }

        except Exception as e:
            logger.exception("Unexpected error during restore")
            return {
                'success': False,
                'error': str(e),
                'restore_id': restore_id,
                'stage': None,
                'logs': self.logs
            }

        finally:
            runner.run('cleanup', self._cleanup, extract_path, downloads)

    def _locate(self, source: str, restore_id: str, downloads: List[str]) -> str:
        self._log(f"Locating backup: {source}")

        if source.startswith('s3://'):
            bucket, key = parse_s3_url(source)
            remote = self._remote(bucket)
            local_path = self._download_path(restore_id, key)
            downloads.append(local_path)
            return remote.download(key, local_path)

        if source.startswith('remote:'):
            name = source[len('remote:'):]
            remote = self._remote()
            key = remote.find_backup(name)
            if key is None:
                raise BackupNotFoundError(f"Backup not found in remote storage: {name}")
            local_path = self._download_path(restore_id, key)
            downloads.append(local_path)
            return remote.download(key, local_path)

        if source.startswith('http://') or source.startswith('https://'):
            local_path = self._download_path(restore_id, source.split('?', 1)[0])
            downloads.append(local_path)
            return download_http(source, local_path)

        archive_path = self.storage.find_archive(source)
        if archive_path is None:
            available = [a['name'] for a in self.storage.list_archives()[:MAX_LISTED_ALTERNATIVES]]
            raise BackupNotFoundError(
                f"Backup not found: {source}. "
                f"Available backups: {', '.join(available) if available else 'none'}"
            )

        self._log(f"Found local backup: {os.path.basename(archive_path)}")
        return archive_path

    def _extract(self, archive_path: str, extract_path: Path):
        self._log(f"Extracting {os.path.basename(archive_path)}...")
        extract_archive(archive_path, str(extract_path))
        self._log("Extraction completed")

    def _validate(self, extract_path: Path) -> Dict[str, Any]:
        """
        Check the extracted artifact before anything touches the database.

        Raises:
            BackupValidationError: If metadata or the database folder is missing
        """
        metadata_path = extract_path / METADATA_FILENAME
        if not metadata_path.is_file():
            raise BackupValidationError("Invalid backup - metadata file missing")

        try:
            with open(metadata_path, encoding='utf-8') as f:
                metadata = json.load(f)
        except (ValueError, OSError) as e:
            raise BackupValidationError(f"Invalid backup - metadata file unreadable: {e}")

        if not isinstance(metadata, dict):
            raise BackupValidationError("Invalid backup - metadata is not an object")

        for field in REQUIRED_METADATA_FIELDS:
            if not metadata.get(field):
                raise BackupValidationError(f"Metadata missing: {field}")

        db_folders = sorted(
            p.name for p in extract_path.iterdir()
            if p.is_dir() and p.name != LocalStorage.TEMP_DIR_NAME
        )
        if not db_folders:
            raise BackupValidationError("No database folders found in backup")

        if metadata['database'] not in db_folders:
            raise BackupValidationError(f"Source database folder not found: {metadata['database']}")

        self._log(f"Found databases: {', '.join(db_folders)}")
        self._log(f"Backup: {metadata['database']} @ {metadata['timestamp']} (version {metadata['version']})")
        return metadata

    def _plan(self, restore_id, archive_path, extract_path, options, settings, runner) -> Dict[str, Any]:
        """Describe what a restore would do, without touching the database."""
        db_path = extract_path / options.source_database
        collections = sorted(
            p.name[:-len('.bson.gz')] for p in db_path.iterdir() if p.name.endswith('.bson.gz')
        )
        self._log(
            f"Dry run: would restore {len(collections)} collections "
            f"from {options.source_database} into {options.target}"
        )
        return {
            'success': True,
            'dry_run': True,
            'restore_id': restore_id,
            'backup_used': os.path.basename(archive_path),
            'source_database': options.source_database,
            'target_database': options.target,
            'collections': collections,
            'plan': {
                'namespaces': build_namespace_args(options),
                'drop': settings.drop,
                'preserve_ids': settings.preserve_ids,
                'verify': not settings.skip_verification
            },
            'warnings': runner.warnings,
            'logs': self.logs
        }

    def _snapshot(self, database: str) -> Dict[str, Any]:
        self.session.ensure_connected()

        snapshot = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database': database,
            'collections': {}
        }
        for name in self.session.list_collections(database):
            try:
                snapshot['collections'][name] = {'count': self.session.count_documents(database, name)}
            except Exception as e:
                snapshot['collections'][name] = {'error': str(e)}

        self._log(f"Pre-restore snapshot: {len(snapshot['collections'])} collections")
        return snapshot

    def _execute(self, extract_path: Path, options: RestoreOptions):
        if not self.config.MONGODB_URI:
            raise ConfigurationError("MONGODB_URI environment variable is required")

        self._log(f"Restoring {options.source_database} -> {options.target}")
        outcome = self.tools.restore(self.config.MONGODB_URI, str(extract_path), options)
        self._log(
            f"Restore completed: {len(outcome.collections)} collections, "
            f"{outcome.total_documents} documents"
        )
        return outcome

    def _verify(self, outcome, database: str, runner: StageRunner) -> Dict[str, Any]:
        self._log("Verifying restore...")

        restored = [c for c in outcome.collections if c.status == 'success']
        verified = 0
        mismatches = []

        for collection in restored:
            try:
                count = self.session.count_documents(database, collection.name)
            except Exception as e:
                runner.warn('verify', f"Could not verify {collection.name}: {e}")
                continue

            if count >= collection.document_count:
                verified += 1
            else:
                mismatches.append(collection.name)
                runner.warn(
                    'verify',
                    f"Count mismatch: {collection.name} (expected {collection.document_count}, got {count})"
                )

        self._log(f"Verification: {verified}/{len(outcome.collections)} collections")
        return {'verified': verified, 'total': len(outcome.collections), 'mismatches': mismatches}

    def _summarize_media_inventory(self, extract_path: Path, runner: StageRunner) -> Optional[Dict[str, Any]]:
        """Summarize media-inventory.json; media objects themselves are never restored."""
        inventory_path = extract_path / MEDIA_INVENTORY_FILENAME
        if not inventory_path.is_file():
            runner.warn('validate', "Backup has no media inventory")
            return None

        try:
            with open(inventory_path, encoding='utf-8') as f:
                inventory = json.load(f)
        except (ValueError, OSError) as e:
            runner.warn('validate', f"Media inventory unreadable: {e}")
            return None

        resources = inventory.get('resources', [])
        summary = {
            'total_count': inventory.get('totalCount', len(resources)),
            'total_size': format_bytes(sum(r.get('size', 0) for r in resources)),
            'bucket': inventory.get('bucket'),
            'prefix': inventory.get('prefix'),
            'backup_timestamp': inventory.get('backupTimestamp')
        }
        self._log(f"Media inventory: {summary['total_count']} resources (informational, not restored)")
        return summary

    def _cleanup(self, extract_path: Path, downloads: List[str]):
        self.storage.remove_tree(str(extract_path))
        for path in downloads:
            if os.path.exists(path):
                os.remove(path)
        self._log("Cleaned temp directory")

    def _remote(self, bucket: Optional[str] = None) -> S3Storage:
        if self.remote_storage is not None and bucket in (None, self.remote_storage.bucket_name):
            return self.remote_storage
        if bucket is None:
            self.remote_storage = S3Storage.from_config(self.config)
            return self.remote_storage
        return S3Storage.from_config(self.config, bucket_name=bucket)

    def _download_path(self, restore_id: str, key: str) -> str:
        filename = key.rsplit('/', 1)[-1] or f"download{ARCHIVE_EXTENSION}"
        return str(self.storage.temp_path / f"{restore_id}-{filename}")

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
