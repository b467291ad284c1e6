"""
Manifest store - records backup metadata next to the files themselves.

Retention and listing prefer the manifest over what can be parsed from a
filename. All methods need an active Flask app context.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from dbsnap import db
from dbsnap.models import BackupManifest
from .records import BackupRecord

logger = logging.getLogger(__name__)


class ManifestStore:
    """Thin persistence layer over the BackupManifest table."""

    def record_created(self, record: BackupRecord) -> BackupManifest:
        entry = BackupManifest.query.filter_by(filename=record.filename).first()
        if entry is None:
            entry = BackupManifest(filename=record.filename)
            db.session.add(entry)

        entry.backup_type = record.type
        entry.created_at = record.created
        entry.size_bytes = record.size
        entry.compressed = record.compressed
        entry.verified = None
        entry.verified_at = None
        entry.remote_key = None
        db.session.commit()
        return entry

    def lookup(self, filenames: Iterable[str]) -> Dict[str, BackupManifest]:
        filenames = list(filenames)
        if not filenames:
            return {}
        entries = BackupManifest.query.filter(BackupManifest.filename.in_(filenames)).all()
        return {entry.filename: entry for entry in entries}

    def get(self, filename: str) -> Optional[BackupManifest]:
        return BackupManifest.query.filter_by(filename=filename).first()

    def mark_verified(self, filename: str, is_valid: bool):
        entry = self.get(filename)
        if entry is None:
            return
        entry.verified = is_valid
        entry.verified_at = datetime.now()
        db.session.commit()

    def mark_uploaded(self, filename: str, remote_key: str):
        entry = self.get(filename)
        if entry is None:
            return
        entry.remote_key = remote_key
        db.session.commit()

    def forget(self, filename: str):
        entry = self.get(filename)
        if entry is None:
            return
        db.session.delete(entry)
        db.session.commit()
        logger.debug(f"Removed manifest entry: {filename}")
