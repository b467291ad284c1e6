"""
Backup records and the on-disk naming convention.

Filenames follow ``<app>_<type>_<YYYY-MM-DD>_<HH-MM-SS>.sql[.gz]``. The
tier substring (``_daily_``, ``_weekly_``, ``_monthly_``) is part of the
retention contract for files that have no manifest entry.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

SCHEDULED_TYPES = ('daily', 'weekly', 'monthly')
BACKUP_TYPES = SCHEDULED_TYPES + ('manual',)

PLAIN_EXTENSION = '.sql'
COMPRESSED_EXTENSION = '.sql.gz'
PARTIAL_SUFFIX = '.partial'

TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


class InvalidBackupTypeError(ValueError):
    """Raised when a backup type is not one of BACKUP_TYPES."""
    pass


@dataclass
class BackupRecord:
    """A backup file in the backup directory."""

    filename: str
    path: str
    size: int
    created: datetime
    type: Optional[str]
    compressed: bool
    verified: Optional[bool] = None
    remote_key: Optional[str] = None

    @property
    def size_mb(self) -> float:
        return round(self.size / (1024 * 1024), 2)

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            'path': self.path,
            'size': self.size,
            'size_formatted': f"{self.size_mb:.2f} MB",
            'created': self.created.isoformat(),
            'type': self.type,
            'compressed': self.compressed,
            'verified': self.verified,
            'remote_key': self.remote_key,
        }


def validate_backup_type(backup_type: str) -> str:
    """
    Check a backup type against the known tiers.

    Raises:
        InvalidBackupTypeError: If backup_type is not recognized
    """
    if backup_type not in BACKUP_TYPES:
        raise InvalidBackupTypeError(
            f"Invalid backup type: {backup_type}. "
            f"Valid options: {list(BACKUP_TYPES)}"
        )
    return backup_type


def generate_backup_filename(app_name: str, backup_type: str, compress: bool, now: Optional[datetime] = None) -> str:
    """
    Generate a backup filename for the given tier.

    Args:
        app_name: Filename prefix
        backup_type: One of BACKUP_TYPES
        compress: Whether the dump will be gzip compressed
        now: Timestamp to encode (defaults to current local time)

    Returns:
        Filename (without path)
    """
    validate_backup_type(backup_type)
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    extension = COMPRESSED_EXTENSION if compress else PLAIN_EXTENSION
    return f"{app_name}_{backup_type}_{timestamp}{extension}"


def is_backup_filename(filename: str) -> bool:
    return filename.endswith(PLAIN_EXTENSION) or filename.endswith(COMPRESSED_EXTENSION)


def is_compressed_filename(filename: str) -> bool:
    return filename.endswith('.gz')


def parse_backup_type(filename: str) -> Optional[str]:
    """
    Infer the tier from a filename.

    Only the scheduled tiers are recognized; anything else (manual backups
    and foreign files) returns None and is never touched by retention.
    """
    for backup_type in SCHEDULED_TYPES:
        if f'_{backup_type}_' in filename:
            return backup_type
    if '_manual_' in filename:
        return 'manual'
    return None


def strip_backup_extension(filename: str) -> str:
    if filename.endswith(COMPRESSED_EXTENSION):
        return filename[:-len(COMPRESSED_EXTENSION)]
    elif filename.endswith(PLAIN_EXTENSION):
        return filename[:-len(PLAIN_EXTENSION)]
    return os.path.splitext(filename)[0]
