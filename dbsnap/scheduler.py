"""
APScheduler-driven backup scheduling for dbsnap.

Manages:
- One cron job per scheduled tier (daily, weekly, monthly)
- Retention cleanup after each successful scheduled backup
- Failure alerts
- Manual triggers

Each tier job runs on its own executor thread and no lock is shared between
tiers, so overlapping schedules produce concurrent dumps into distinct files.
"""

import contextlib
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from dbsnap.alerts import AlertEvent
from dbsnap.backup.records import BackupRecord, SCHEDULED_TYPES, validate_backup_type
from dbsnap.config import BackupConfig, TierSchedule

logger = logging.getLogger(__name__)

HEALTH_CHECK_DELAY_SECONDS = 5
RECENT_BACKUP_WINDOW = timedelta(hours=24)


class ScheduleConfigError(ValueError):
    """Raised when a tier's cron expression or timezone is invalid."""
    pass


CRON_WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _cron_weekday(token: str) -> int:
    """Crontab day number (0-6, Sunday = 0) for a number 0-7 or a day name."""
    token = token.strip().lower()
    if token in CRON_WEEKDAYS:
        return CRON_WEEKDAYS.index(token)
    if not token.isdigit() or int(token) > 7:
        raise ValueError(f"Invalid day of week: {token!r}")
    return int(token) % 7


def translate_day_of_week(field: str) -> str:
    """
    Rewrite a crontab day-of-week field with day names.

    Crontab numbers days from Sunday (0 or 7) while APScheduler numbers
    them from Monday, so every number, range and step is expanded into an
    explicit list of names APScheduler reads the same way.
    """
    if field in ('*', '?'):
        return '*'

    days = []
    for part in field.split(','):
        base, _, step = part.partition('/')
        if step and (not step.isdigit() or int(step) == 0):
            raise ValueError(f"Invalid day of week step: {part!r}")

        if base in ('*', '?'):
            first, last = 0, 6
        elif '-' in base:
            start, _, end = base.partition('-')
            # 7 is the Sunday that follows Saturday, as in "5-7"
            first = 7 if start.strip() == '7' else _cron_weekday(start)
            last = 7 if end.strip() == '7' else _cron_weekday(end)
            if last < first:
                raise ValueError(f"Invalid day of week range: {part!r}")
        else:
            first = _cron_weekday(base)
            last = 6 if step else first

        for day in range(first, last + 1, int(step or 1)):
            name = CRON_WEEKDAYS[day % 7]
            if name not in days:
                days.append(name)

    return ','.join(days)


def build_trigger(schedule: TierSchedule, tz: str) -> CronTrigger:
    """
    Parse a tier's crontab expression.

    Day-of-week values use crontab numbering (0 and 7 are Sunday).

    Raises:
        ScheduleConfigError: If the expression or timezone is invalid
    """
    try:
        fields = schedule.cron.split()
        if len(fields) != 5:
            raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
        minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=translate_day_of_week(day_of_week),
            timezone=tz
        )
    except (ValueError, TypeError, KeyError) as e:
        raise ScheduleConfigError(
            f"Invalid {schedule.name} backup schedule {schedule.cron!r}: {e}"
        ) from e


class BackupScheduler:
    """
    Owns one cron job per enabled tier.

    Constructed once by the application factory and shared by handle.
    """

    def __init__(self, manager, config: BackupConfig, alert_sink=None, app=None):
        """
        Initialize backup scheduler.

        Args:
            manager: BackupManager used for backups and cleanup
            config: Backup configuration (schedules, timezone)
            alert_sink: Optional sink with a send(AlertEvent) method
            app: Flask app whose context wraps job execution
        """
        self.manager = manager
        self.config = config
        self.alert_sink = alert_sink
        self.app = app
        self.timezone = config.timezone

        self._scheduler = None
        self._jobs = {}  # tier name -> APScheduler job id
        self._lock = threading.Lock()  # guards start/stop only

    @property
    def schedules(self) -> Dict[str, str]:
        return {s.name: s.cron for s in self.config.schedules}

    @property
    def enabled(self) -> Dict[str, bool]:
        return {s.name: s.enabled for s in self.config.schedules}

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _app_context(self):
        if self.app is not None:
            return self.app.app_context()
        return contextlib.nullcontext()

    def validate_schedules(self) -> Dict[str, bool]:
        """
        Check every tier's cron expression.

        Returns:
            Dict of tier name -> True if valid, False otherwise
        """
        results = {}

        for schedule in self.config.schedules:
            try:
                build_trigger(schedule, self.timezone)
                results[schedule.name] = True
                logger.info(f"{schedule.name} backup schedule is valid ({schedule.cron})")
            except ScheduleConfigError as e:
                results[schedule.name] = False
                logger.error(str(e))

        return results

    def start(self) -> bool:
        """
        Start cron jobs for every valid, enabled tier.

        A tier with an invalid schedule is skipped; the others still start.

        Returns:
            True if the scheduler is running afterwards
        """
        with self._lock:
            if self.is_running:
                logger.warning("Backup scheduler is already running")
                return True

            logger.info("Starting backup scheduler")

            # Triggers are built first so a bad timezone or cron expression
            # only skips tiers and never escapes start()
            triggers = {}

            for schedule in self.config.schedules:
                if not schedule.enabled:
                    logger.info(f"{schedule.name} backups disabled, not scheduling")
                    continue

                try:
                    triggers[schedule.name] = build_trigger(schedule, self.timezone)
                except ScheduleConfigError as e:
                    logger.error(f"Skipping {schedule.name} backups: {e}")

            if not triggers:
                logger.error("No valid backup schedules found, scheduler not started")
                return False

            scheduler = BackgroundScheduler(
                executors={
                    # One worker per tier plus one for housekeeping jobs
                    'default': ThreadPoolExecutor(max_workers=len(SCHEDULED_TYPES) + 1)
                },
                job_defaults={
                    'coalesce': True,
                    'max_instances': 1,
                    'misfire_grace_time': 300
                },
                timezone=self.timezone
            )

            jobs = {}

            for name, trigger in triggers.items():
                job_id = f"backup_{name}"
                scheduler.add_job(
                    func=self._run_scheduled_backup,
                    args=[name],
                    trigger=trigger,
                    id=job_id,
                    name=f"{name.capitalize()} database backup",
                    replace_existing=True
                )
                jobs[name] = job_id
                logger.info(f"{name} backup job scheduled ({self.schedules[name]}, timezone: {self.timezone})")

            scheduler.start()
            self._scheduler = scheduler
            self._jobs = jobs

            scheduler.add_job(
                func=self._run_health_check,
                trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=HEALTH_CHECK_DELAY_SECONDS)),
                id='initial_health_check',
                name='Initial health check',
                replace_existing=True
            )

            logger.info(f"Backup scheduler started successfully (jobs: {', '.join(jobs)})")
            return True

    def stop(self):
        """Stop all tier jobs. Safe to call when not running."""
        with self._lock:
            if not self.is_running:
                logger.warning("Backup scheduler is not running")
                self._scheduler = None
                self._jobs = {}
                return

            logger.info("Stopping backup scheduler")

            self._scheduler.shutdown(wait=False)
            for name in self._jobs:
                logger.info(f"{name} backup job stopped")

            self._scheduler = None
            self._jobs = {}
            logger.info("Backup scheduler stopped")

    def _run_scheduled_backup(self, backup_type: str):
        with self._app_context():
            self.create_scheduled_backup(backup_type)

    def _run_health_check(self):
        with self._app_context():
            self.health_check()

    def create_scheduled_backup(self, backup_type: str) -> Optional[BackupRecord]:
        """
        Run one scheduled backup followed by retention cleanup.

        Failures are logged and alerted, then swallowed so the cron runner
        and the other tiers keep firing.

        Returns:
            BackupRecord on success, None on failure
        """
        try:
            return self._execute_backup(backup_type)
        except Exception:
            # Already logged and alerted by _execute_backup
            return None

    def trigger_backup(self, backup_type: str) -> BackupRecord:
        """
        Run a backup now, outside the cron schedule.

        Raises:
            InvalidBackupTypeError: If backup_type is unknown (nothing is written)
            Exception: Whatever the backup itself raised, after alerting
        """
        validate_backup_type(backup_type)
        logger.info(f"Manually triggering {backup_type} backup")
        return self._execute_backup(backup_type)

    def _execute_backup(self, backup_type: str) -> BackupRecord:
        started = time.monotonic()
        logger.info(f"Starting scheduled {backup_type} backup")

        try:
            record = self.manager.create_backup(backup_type)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Scheduled {backup_type} backup failed after {duration_ms}ms: {e}", exc_info=True)
            self.handle_backup_failure(backup_type, e)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Scheduled {backup_type} backup completed successfully: {record.filename} "
            f"({record.size_mb:.2f} MB, {duration_ms}ms, path: {record.path})"
        )

        try:
            self.manager.clean_old_backups()
        except Exception as e:
            logger.error(f"Retention cleanup after {backup_type} backup failed: {e}")

        return record

    def handle_backup_failure(self, backup_type: str, error: Exception) -> Optional[threading.Thread]:
        """
        Log a failed backup at high severity and dispatch the webhook alert.

        Returns:
            The alert delivery thread, or None when no sink is configured
        """
        event = AlertEvent(type=backup_type, error=str(error))

        logger.critical(
            f"BACKUP FAILURE ALERT: type={event.type} error={event.error} "
            f"timestamp={event.timestamp.isoformat()} severity=HIGH"
        )

        if self.alert_sink is None:
            return None

        thread = threading.Thread(
            target=self._deliver_alert,
            args=(event,),
            name=f"backup-alert-{backup_type}",
            daemon=True
        )
        thread.start()
        return thread

    def _deliver_alert(self, event: AlertEvent):
        try:
            self.alert_sink.send(event)
        except Exception as e:
            logger.error(f"Failed to send backup failure alert (original error: {event.error}): {e}")

    def get_next_runs(self) -> Dict[str, Optional[str]]:
        """
        Next fire time per tier.

        Uses the live jobs when running, otherwise estimates from the cron
        expressions of enabled tiers.
        """
        next_runs = {}

        if self.is_running:
            for name, job_id in self._jobs.items():
                job = self._scheduler.get_job(job_id)
                next_runs[name] = job.next_run_time.isoformat() if job and job.next_run_time else None
            return next_runs

        for schedule in self.config.schedules:
            if not schedule.enabled:
                continue
            try:
                trigger = build_trigger(schedule, self.timezone)
            except ScheduleConfigError:
                next_runs[schedule.name] = None
                continue
            fire_time = trigger.get_next_fire_time(None, datetime.now(trigger.timezone))
            next_runs[schedule.name] = fire_time.isoformat() if fire_time else None

        return next_runs

    def get_status(self) -> dict:
        running = self.is_running
        return {
            'running': running,
            'jobs': list(self._jobs) if running else [],
            'schedules': self.schedules,
            'enabled': self.enabled,
            'timezone': self.timezone,
            'next_runs': self.get_next_runs()
        }

    def health_check(self) -> dict:
        """
        Report whether a backup happened in the last 24 hours.

        Informational only: problems are logged, never raised.
        """
        try:
            status = self.get_status()
            backups = self.manager.list_backups()
            now = datetime.now()
            recent = [b for b in backups if now - b.created < RECENT_BACKUP_WINDOW]
            last = backups[0] if backups else None

            report = {
                'status': 'healthy' if status['running'] else 'stopped',
                'healthy': bool(recent),
                'active_jobs': len(status['jobs']),
                'next_runs': status['next_runs'],
                'total_backups': len(backups),
                'recent_backups': len(recent),
                'last_backup': {
                    'filename': last.filename,
                    'created': last.created.isoformat(),
                    'size': f"{last.size_mb:.2f} MB"
                } if last else None
            }

            logger.info(
                f"Backup scheduler health check: status={report['status']} "
                f"active_jobs={report['active_jobs']} total_backups={report['total_backups']} "
                f"recent_backups={report['recent_backups']}"
            )
            if not recent:
                logger.warning("No backup completed in the last 24 hours")

            return report

        except Exception as e:
            logger.error(f"Backup scheduler health check failed: {e}")
            return {'status': 'error', 'healthy': False, 'error': str(e)}
