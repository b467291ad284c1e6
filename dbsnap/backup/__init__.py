"""
Backup module for dbsnap.

This module handles the core backup functionality including:
- Dump execution (pg_dump / pg_restore)
- Compression and integrity checks
- Backup listing, verification and restore
- Retention policy enforcement
- Remote upload hooks
"""

from .dump import DumpExecutor, ExecutionError, DumpTimeoutError, StreamError
from .manager import BackupManager
from .manifest import ManifestStore
from .records import BackupRecord, BACKUP_TYPES, SCHEDULED_TYPES, InvalidBackupTypeError
from .retention import RetentionManager
from .uploader import RemoteUploader, S3Uploader, UploadResult, create_uploader

__all__ = [
    'DumpExecutor',
    'ExecutionError',
    'DumpTimeoutError',
    'StreamError',
    'BackupManager',
    'ManifestStore',
    'BackupRecord',
    'BACKUP_TYPES',
    'SCHEDULED_TYPES',
    'InvalidBackupTypeError',
    'RetentionManager',
    'RemoteUploader',
    'S3Uploader',
    'UploadResult',
    'create_uploader'
]
