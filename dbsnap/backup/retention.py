"""
Retention policy for tiered backups.

Each scheduled tier has a maximum age:
- daily:   retention.daily days
- weekly:  retention.weekly * 7 days
- monthly: retention.monthly * 30 days

Manual backups and files whose tier is unknown have no maximum age.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from dbsnap.config import RetentionPolicy
from .records import BackupRecord

SECONDS_PER_DAY = 24 * 60 * 60


def backup_age_days(created: datetime, now: datetime) -> int:
    """Whole days elapsed since created (floored)."""
    return int((now - created).total_seconds() // SECONDS_PER_DAY)


class RetentionManager:
    """
    Decides which backups have outlived their tier's retention window.
    """

    def __init__(self, policy: RetentionPolicy):
        self.policy = policy

    def max_age_days(self, backup_type: Optional[str]) -> Optional[int]:
        """
        Maximum age in days for a tier, or None if the tier is never expired.
        """
        if backup_type == 'daily':
            return self.policy.daily
        elif backup_type == 'weekly':
            return self.policy.weekly * 7
        elif backup_type == 'monthly':
            return self.policy.monthly * 30
        return None

    def is_expired(self, record: BackupRecord, now: datetime) -> bool:
        max_age = self.max_age_days(record.type)
        if max_age is None:
            return False
        return backup_age_days(record.created, now) > max_age

    def select_expired(self, records: Iterable[BackupRecord], now: Optional[datetime] = None) -> List[Tuple[BackupRecord, int]]:
        """
        Pick the records to delete.

        Returns:
            List of (record, age_in_days) tuples
        """
        now = now or datetime.now()
        return [
            (record, backup_age_days(record.created, now))
            for record in records
            if self.is_expired(record, now)
        ]

    def describe(self) -> dict:
        return {
            'daily_days': self.max_age_days('daily'),
            'weekly_days': self.max_age_days('weekly'),
            'monthly_days': self.max_age_days('monthly'),
        }
