"""
Backup manager - single entry point for the backup lifecycle.

Lifecycle of one backup:
    create_backup     -> CREATING -> CREATED
    verify_backup     -> VERIFIED | CORRUPTED
    clean_old_backups -> RETAINED | DELETED
"""

import logging
import os
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dbsnap.config import BackupConfig
from .compression import CompressionError, check_gzip_integrity
from .dump import DumpExecutor, ProcessResult
from .manifest import ManifestStore
from .records import (
    BackupRecord,
    PARTIAL_SUFFIX,
    generate_backup_filename,
    is_backup_filename,
    is_compressed_filename,
    parse_backup_type,
    validate_backup_type,
)
from .retention import RetentionManager, SECONDS_PER_DAY
from .uploader import RemoteUploader, UploadResult

logger = logging.getLogger(__name__)

# Partial dump files older than this were left behind by a killed process
STALE_PARTIAL_SECONDS = SECONDS_PER_DAY


class BackupManager:
    """
    Creates, lists, verifies, expires and restores database backups.
    """

    def __init__(self, config: BackupConfig, executor: Optional[DumpExecutor] = None,
                 uploader: Optional[RemoteUploader] = None, manifest: Optional[ManifestStore] = None):
        """
        Initialize backup manager.

        Args:
            config: Backup configuration
            executor: Dump executor (built from config if omitted)
            uploader: Optional post-backup upload hook
            manifest: Optional manifest store; without it the manager works
                from the backup directory alone
        """
        self.config = config
        self.backup_dir = config.backup_dir
        self.executor = executor or DumpExecutor.from_config(config)
        self.uploader = uploader
        self.manifest = manifest
        self.retention = RetentionManager(config.retention)

    def ensure_backup_directory(self):
        if not os.path.isdir(self.backup_dir):
            logger.info(f"Creating backup directory: {self.backup_dir}")
        os.makedirs(self.backup_dir, exist_ok=True)

    def generate_backup_filename(self, backup_type: str = 'manual', now: Optional[datetime] = None) -> str:
        return generate_backup_filename(self.config.app_name, backup_type, self.config.compress, now)

    def create_backup(self, backup_type: str = 'manual') -> BackupRecord:
        """
        Create a new database backup.

        Args:
            backup_type: daily, weekly, monthly or manual

        Returns:
            BackupRecord for the new file

        Raises:
            InvalidBackupTypeError: If backup_type is unknown (nothing is written)
            FileExistsError: If a backup with the same name already exists
            ExecutionError: If the dump tool fails
            StreamError: If writing the dump fails
        """
        validate_backup_type(backup_type)
        logger.info(f"Starting database backup (type: {backup_type})")

        self.ensure_backup_directory()

        created = datetime.now()
        filename = self.generate_backup_filename(backup_type, created)
        backup_path = os.path.join(self.backup_dir, filename)

        if os.path.exists(backup_path):
            raise FileExistsError(f"Backup file already exists: {backup_path}")

        try:
            self.executor.execute_dump(backup_path, compress=self.config.compress)
        except Exception as e:
            logger.error(f"Backup failed (type: {backup_type}): {e}")
            raise

        size = os.path.getsize(backup_path)
        record = BackupRecord(
            filename=filename,
            path=backup_path,
            size=size,
            created=created,
            type=backup_type,
            compressed=self.config.compress
        )

        logger.info(
            f"Backup completed successfully: {filename} "
            f"({record.size_mb:.2f} MB, compressed={record.compressed})"
        )

        self._record_in_manifest(record)

        if self.uploader is not None:
            result = self._run_upload(record)
            if result.success:
                record.remote_key = result.remote_key
                self._update_manifest(lambda: self.manifest.mark_uploaded(filename, result.remote_key))

        return record

    def _run_upload(self, record: BackupRecord) -> UploadResult:
        """Run the upload hook; its failure is logged, never raised."""
        logger.info(f"Uploading backup to remote storage ({self.uploader.name}): {record.filename}")
        try:
            result = self.uploader.upload(record.path, record.filename)
        except Exception as e:
            result = UploadResult(success=False, error=str(e))

        if result.success:
            logger.info(f"Remote upload completed: {result.remote_key}")
        else:
            logger.error(f"Remote upload failed, local backup is still valid: {result.error}")
        return result

    def _record_in_manifest(self, record: BackupRecord):
        if self.manifest is not None:
            self._update_manifest(lambda: self.manifest.record_created(record))

    def _update_manifest(self, operation):
        if self.manifest is None:
            return
        try:
            operation()
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(f"Failed to update backup manifest: {e}")

    def list_backups(self) -> List[BackupRecord]:
        """
        List backup files in the backup directory, newest first.

        Tier and creation time come from the manifest when an entry exists,
        otherwise from the filename and the file's modification time.
        """
        if not os.path.isdir(self.backup_dir):
            return []

        filenames = [name for name in os.listdir(self.backup_dir) if is_backup_filename(name)]
        entries = {}
        if self.manifest is not None and filenames:
            try:
                entries = self.manifest.lookup(filenames)
            except (SQLAlchemyError, RuntimeError) as e:
                logger.warning(f"Backup manifest unavailable, using file metadata: {e}")

        backups = []
        for filename in filenames:
            path = os.path.join(self.backup_dir, filename)
            try:
                stat = os.stat(path)
            except FileNotFoundError:
                # Removed between listdir and stat
                continue
            if not os.path.isfile(path):
                continue

            entry = entries.get(filename)
            backups.append(BackupRecord(
                filename=filename,
                path=path,
                size=stat.st_size,
                created=entry.created_at if entry else datetime.fromtimestamp(stat.st_mtime),
                type=entry.backup_type if entry else parse_backup_type(filename),
                compressed=is_compressed_filename(filename),
                verified=entry.verified if entry else None,
                remote_key=entry.remote_key if entry else None
            ))

        backups.sort(key=lambda record: record.created, reverse=True)
        return backups

    def verify_backup(self, backup_path: str) -> bool:
        """
        Cheap integrity check of a backup file. Never raises.

        A backup is valid when it exists, is readable, is not empty and,
        for .gz files, its gzip container decompresses end to end.
        """
        try:
            is_valid = self._check_backup(backup_path)
        except Exception as e:
            logger.error(f"Backup verification failed for {backup_path}: {e}")
            is_valid = False

        if self.manifest is not None and os.path.dirname(os.path.abspath(backup_path)) == os.path.abspath(self.backup_dir):
            filename = os.path.basename(backup_path)
            self._update_manifest(lambda: self.manifest.mark_verified(filename, is_valid))

        return is_valid

    def _check_backup(self, backup_path: str) -> bool:
        if not os.path.isfile(backup_path):
            logger.error(f"Backup verification failed: file not found: {backup_path}")
            return False

        if not os.access(backup_path, os.R_OK):
            logger.error(f"Backup verification failed: file not readable: {backup_path}")
            return False

        if os.path.getsize(backup_path) == 0:
            logger.error(f"Backup verification failed: file is empty: {backup_path}")
            return False

        if is_compressed_filename(backup_path):
            try:
                check_gzip_integrity(backup_path)
            except CompressionError as e:
                logger.error(f"Backup verification failed: gzip test failed: {e}")
                return False

        logger.info(f"Backup verified: {backup_path}")
        return True

    def clean_old_backups(self, now: Optional[datetime] = None) -> dict:
        """
        Delete backups older than their tier's retention window.

        Manual backups and files without a recognized tier are never
        deleted. Stale partial files from interrupted dumps are removed too.

        Returns:
            Dict with summary: {'deleted': int, 'deleted_files': List[str],
            'partials_removed': int, 'errors': List[str]}
        """
        now = now or datetime.now()
        logger.info(f"Starting backup cleanup (retention: {self.retention.describe()})")

        summary = {
            'deleted': 0,
            'deleted_files': [],
            'partials_removed': 0,
            'errors': []
        }

        try:
            backups = self.list_backups()
        except OSError as e:
            error_msg = f"Failed to list backups: {e}"
            logger.error(f"Backup cleanup failed: {error_msg}")
            summary['errors'].append(error_msg)
            return summary

        for record, age_in_days in self.retention.select_expired(backups, now):
            try:
                os.remove(record.path)
            except FileNotFoundError:
                continue
            except OSError as e:
                error_msg = f"Failed to delete {record.filename}: {e}"
                logger.error(error_msg)
                summary['errors'].append(error_msg)
                continue

            logger.info(f"Deleted old backup: {record.filename} (type: {record.type}, age: {age_in_days} days)")
            summary['deleted'] += 1
            summary['deleted_files'].append(record.filename)
            if self.manifest is not None:
                self._update_manifest(lambda: self.manifest.forget(record.filename))

        summary['partials_removed'] = self._remove_stale_partials(now)

        logger.info(f"Backup cleanup completed: {summary['deleted']} deleted")
        return summary

    def _remove_stale_partials(self, now: datetime) -> int:
        if not os.path.isdir(self.backup_dir):
            return 0

        removed = 0
        cutoff = now.timestamp() - STALE_PARTIAL_SECONDS

        for filename in os.listdir(self.backup_dir):
            if not filename.endswith(PARTIAL_SUFFIX):
                continue
            path = os.path.join(self.backup_dir, filename)
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed += 1
                    logger.info(f"Removed stale partial dump: {filename}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove stale partial dump {filename}: {e}")

        return removed

    def restore_from_backup(self, backup_path: str) -> ProcessResult:
        """
        Restore the database from a backup file.

        Raises:
            FileNotFoundError: If backup_path does not exist
            ExecutionError: If pg_restore fails
        """
        logger.info(f"Starting database restore from {backup_path}")
        return self.executor.execute_restore(backup_path)

    def resolve_backup_path(self, filename: str) -> str:
        """
        Map a bare filename to its path inside the backup directory.

        Raises:
            ValueError: If filename contains path components
        """
        if not filename or filename in ('.', '..') or os.path.basename(filename) != filename or '\\' in filename:
            raise ValueError(f"Invalid backup filename: {filename}")
        return os.path.join(self.backup_dir, filename)
