from datetime import datetime
from dbsnap import db


class BackupManifest(db.Model):
    """Sidecar metadata for a backup file in the backup directory"""
    __tablename__ = 'backup_manifest'

    id = db.Column(db.Integer, primary_key=True)
    filename = db.Column(db.String(255), unique=True, nullable=False)
    backup_type = db.Column(db.String(20), nullable=False)  # daily, weekly, monthly, manual
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    size_bytes = db.Column(db.BigInteger, nullable=False)
    compressed = db.Column(db.Boolean, default=False, nullable=False)
    verified = db.Column(db.Boolean, nullable=True)  # None = never verified
    verified_at = db.Column(db.DateTime)
    remote_key = db.Column(db.String(500))  # Set when the post-backup upload succeeded

    def __repr__(self):
        return f'<BackupManifest {self.filename} type={self.backup_type} verified={self.verified}>'
