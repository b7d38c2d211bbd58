"""
Backup module for Landkeeper.

This module handles the core backup functionality including:
- MongoDB dump/restore through the external tools
- Compression
- Storage (local and S3)
- Backup and restore orchestration
- Retention policy enforcement
- Health checks
"""

from .executor import BackupManager, run_backup_cycle
from .restore import RestoreManager, RestoreSettings
from .mongo import MongoToolExecutor, RestoreOptions
from .compression import compress_folder, extract_archive
from .storage import S3Storage, LocalStorage
from .retention import RetentionManager
from .health import BackupHealthChecker

__all__ = [
    'BackupManager',
    'run_backup_cycle',
    'RestoreManager',
    'RestoreSettings',
    'MongoToolExecutor',
    'RestoreOptions',
    'compress_folder',
    'extract_archive',
    'S3Storage',
    'LocalStorage',
    'RetentionManager',
    'BackupHealthChecker'
]
