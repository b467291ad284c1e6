"""
Unit tests for the backup scheduler (dbsnap/scheduler.py).

Tests APScheduler wiring per tier, failure isolation and alerting.
"""

import logging
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock, call

import pytest
from flask import has_app_context

from dbsnap.alerts import AlertDeliveryError, AlertEvent
from dbsnap.backup import BackupManager, ExecutionError, InvalidBackupTypeError
from dbsnap.backup.records import BackupRecord
from dbsnap.config import TierSchedule
from dbsnap.scheduler import BackupScheduler, ScheduleConfigError, build_trigger, translate_day_of_week


def _record(backup_type='daily', created=None):
    return BackupRecord(
        filename=f'app_{backup_type}_2024-06-15_02-00-00.sql.gz',
        path=f'/backups/app_{backup_type}_2024-06-15_02-00-00.sql.gz',
        size=2 * 1024 * 1024,
        created=created or datetime.now(),
        type=backup_type,
        compressed=True
    )


@pytest.fixture
def bad_weekly_config(backup_config):
    return replace(backup_config, schedules=(
        TierSchedule('daily', '0 2 * * *'),
        TierSchedule('weekly', 'not a cron'),
        TierSchedule('monthly', '0 4 1 * *'),
    ))


@pytest.fixture
def mock_manager():
    manager = MagicMock()
    manager.create_backup.return_value = _record()
    manager.clean_old_backups.return_value = {'deleted': 0, 'deleted_files': [], 'partials_removed': 0, 'errors': []}
    manager.list_backups.return_value = []
    return manager


@pytest.fixture
def scheduler_factory():
    """Build schedulers and make sure every one is stopped afterwards."""
    created = []

    def _make(manager, config, **kwargs):
        scheduler = BackupScheduler(manager, config, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        scheduler.stop()


class TestBuildTrigger:

    def test_valid_expression(self):
        trigger = build_trigger(TierSchedule('daily', '0 2 * * *'), 'UTC')
        next_fire = trigger.get_next_fire_time(None, datetime(2024, 6, 15, 12, 0, tzinfo=trigger.timezone))
        assert (next_fire.day, next_fire.hour, next_fire.minute) == (16, 2, 0)

    def test_weekly_default_fires_on_sunday(self):
        trigger = build_trigger(TierSchedule('weekly', '0 3 * * 0'), 'UTC')

        # 2024-01-01 is a Monday
        next_fire = trigger.get_next_fire_time(None, datetime(2024, 1, 1, tzinfo=trigger.timezone))

        assert next_fire.strftime('%A') == 'Sunday'
        assert (next_fire.day, next_fire.hour) == (7, 3)

    def test_seven_is_sunday(self):
        trigger = build_trigger(TierSchedule('weekly', '0 3 * * 7'), 'UTC')

        next_fire = trigger.get_next_fire_time(None, datetime(2024, 1, 1, tzinfo=trigger.timezone))

        assert next_fire.strftime('%A') == 'Sunday'

    @pytest.mark.parametrize('field,expected', [
        ('*', '*'),
        ('0', 'sun'),
        ('7', 'sun'),
        ('1-5', 'mon,tue,wed,thu,fri'),
        ('5-7', 'fri,sat,sun'),
        ('0-6', 'sun,mon,tue,wed,thu,fri,sat'),
        ('*/2', 'sun,tue,thu,sat'),
        ('1/3', 'mon,thu'),
        ('sat,sun', 'sat,sun'),
        ('Mon-Wed', 'mon,tue,wed'),
        ('0,7', 'sun'),
    ])
    def test_translate_day_of_week(self, field, expected):
        assert translate_day_of_week(field) == expected

    @pytest.mark.parametrize('cron', [
        'not a cron', '61 2 * * *', '* * *', '', '0 3 * * 8', '0 3 * * 5-1', '0 3 * * */0',
    ])
    def test_invalid_expression(self, cron):
        with pytest.raises(ScheduleConfigError):
            build_trigger(TierSchedule('daily', cron), 'UTC')

    def test_invalid_timezone(self):
        with pytest.raises(ScheduleConfigError):
            build_trigger(TierSchedule('daily', '0 2 * * *'), 'Mars/Olympus')


class TestValidateSchedules:

    def test_flags_only_invalid_tier(self, mock_manager, bad_weekly_config):
        scheduler = BackupScheduler(mock_manager, bad_weekly_config)

        assert scheduler.validate_schedules() == {'daily': True, 'weekly': False, 'monthly': True}

    def test_all_defaults_valid(self, mock_manager, backup_config):
        scheduler = BackupScheduler(mock_manager, backup_config)

        assert scheduler.validate_schedules() == {'daily': True, 'weekly': True, 'monthly': True}


class TestStartStop:
    """Test cron job lifecycle."""

    def test_start_skips_invalid_tier(self, mock_manager, bad_weekly_config, scheduler_factory):
        scheduler = scheduler_factory(mock_manager, bad_weekly_config)

        assert scheduler.start() is True

        status = scheduler.get_status()
        assert status['running'] is True
        assert status['jobs'] == ['daily', 'monthly']

    def test_start_schedules_all_valid_tiers(self, mock_manager, backup_config, scheduler_factory):
        scheduler = scheduler_factory(mock_manager, backup_config)
        scheduler.start()

        status = scheduler.get_status()
        assert status['jobs'] == ['daily', 'weekly', 'monthly']
        assert set(status['next_runs']) == {'daily', 'weekly', 'monthly'}
        assert all(status['next_runs'].values())
        assert status['timezone'] == 'UTC'

    def test_disabled_tier_not_scheduled(self, mock_manager, backup_config, scheduler_factory):
        config = replace(backup_config, schedules=(
            TierSchedule('daily', '0 2 * * *'),
            TierSchedule('weekly', '0 3 * * 0', enabled=False),
            TierSchedule('monthly', '0 4 1 * *'),
        ))
        scheduler = scheduler_factory(mock_manager, config)
        scheduler.start()

        status = scheduler.get_status()
        assert status['jobs'] == ['daily', 'monthly']
        assert status['enabled'] == {'daily': True, 'weekly': False, 'monthly': True}

    def test_start_with_no_valid_tier(self, mock_manager, backup_config, scheduler_factory):
        config = replace(backup_config, schedules=(TierSchedule('daily', 'bad'),))
        scheduler = scheduler_factory(mock_manager, config)

        assert scheduler.start() is False
        assert scheduler.is_running is False

    def test_start_with_invalid_timezone(self, mock_manager, backup_config, scheduler_factory):
        config = replace(backup_config, timezone='Mars/Olympus')
        scheduler = scheduler_factory(mock_manager, config)

        assert scheduler.validate_schedules() == {'daily': False, 'weekly': False, 'monthly': False}
        assert scheduler.start() is False
        assert scheduler.is_running is False
        assert scheduler.get_status()['next_runs'] == {'daily': None, 'weekly': None, 'monthly': None}

    def test_start_twice(self, mock_manager, backup_config, scheduler_factory, caplog):
        scheduler = scheduler_factory(mock_manager, backup_config)
        scheduler.start()

        with caplog.at_level(logging.WARNING):
            assert scheduler.start() is True

        assert 'already running' in caplog.text
        assert scheduler.get_status()['jobs'] == ['daily', 'weekly', 'monthly']

    def test_stop_is_idempotent(self, mock_manager, backup_config):
        scheduler = BackupScheduler(mock_manager, backup_config)

        scheduler.stop()
        scheduler.start()
        scheduler.stop()
        scheduler.stop()

        status = scheduler.get_status()
        assert status['running'] is False
        assert status['jobs'] == []

    def test_can_restart(self, mock_manager, backup_config, scheduler_factory):
        scheduler = scheduler_factory(mock_manager, backup_config)
        scheduler.start()
        scheduler.stop()

        assert scheduler.start() is True
        assert scheduler.is_running is True

    def test_next_runs_estimated_when_stopped(self, mock_manager, bad_weekly_config):
        scheduler = BackupScheduler(mock_manager, bad_weekly_config)

        next_runs = scheduler.get_status()['next_runs']

        assert next_runs['weekly'] is None
        assert next_runs['daily'] is not None
        assert next_runs['monthly'] is not None


class TestScheduledBackup:
    """Test the backup -> cleanup -> alert pipeline."""

    def test_success_runs_cleanup_after_backup(self, mock_manager, backup_config):
        scheduler = BackupScheduler(mock_manager, backup_config)

        record = scheduler.create_scheduled_backup('daily')

        assert record.type == 'daily'
        assert mock_manager.mock_calls[:2] == [call.create_backup('daily'), call.clean_old_backups()]

    def test_failure_is_swallowed(self, mock_manager, backup_config):
        mock_manager.create_backup.side_effect = ExecutionError('pg_dump failed with exit code 1')
        alert_sink = MagicMock()
        scheduler = BackupScheduler(mock_manager, backup_config, alert_sink=alert_sink)

        assert scheduler.create_scheduled_backup('daily') is None
        mock_manager.clean_old_backups.assert_not_called()

    def test_failure_logs_critical_alert(self, mock_manager, backup_config, caplog):
        mock_manager.create_backup.side_effect = ExecutionError('disk full')
        scheduler = BackupScheduler(mock_manager, backup_config)

        with caplog.at_level(logging.INFO):
            scheduler.create_scheduled_backup('weekly')

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert 'BACKUP FAILURE ALERT' in critical[0].getMessage()
        assert 'type=weekly' in critical[0].getMessage()

    def test_cleanup_failure_does_not_fail_backup(self, mock_manager, backup_config):
        mock_manager.clean_old_backups.side_effect = OSError('permission denied')
        scheduler = BackupScheduler(mock_manager, backup_config)

        assert scheduler.create_scheduled_backup('daily') is not None

    def test_job_runs_in_app_context(self, app, mock_manager, backup_config):
        seen = []
        mock_manager.create_backup.side_effect = lambda backup_type: seen.append(has_app_context()) or _record(backup_type)
        scheduler = BackupScheduler(mock_manager, backup_config, app=app)

        scheduler._run_scheduled_backup('daily')

        assert seen == [True]


class TestConcurrentTiers:
    """Tiers share no lock, so overlapping schedules dump side by side."""

    def test_two_tiers_dump_at_the_same_time(self, backup_config, monkeypatch):
        manager = BackupManager(backup_config)
        scheduler = BackupScheduler(manager, backup_config)
        # Each dump waits until the other tier's dump has also started
        both_running = threading.Barrier(2, timeout=10)
        execute_dump = manager.executor.execute_dump

        def overlapping_dump(output_path, compress=None):
            both_running.wait()
            return execute_dump(output_path, compress=compress)

        monkeypatch.setattr(manager.executor, 'execute_dump', overlapping_dump)
        results = {}

        def run(tier):
            results[tier] = scheduler.create_scheduled_backup(tier)

        threads = [threading.Thread(target=run, args=(tier,)) for tier in ('daily', 'weekly')]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert results['daily'] is not None
        assert results['weekly'] is not None
        assert results['daily'].path != results['weekly'].path
        assert manager.verify_backup(results['daily'].path) is True
        assert manager.verify_backup(results['weekly'].path) is True
        assert not both_running.broken


class TestTriggerBackup:

    def test_bogus_type_rejected_without_writes(self, backup_config, backup_dir):
        scheduler = BackupScheduler(BackupManager(backup_config), backup_config)

        with pytest.raises(InvalidBackupTypeError):
            scheduler.trigger_backup('bogus')

        assert not os.path.exists(backup_dir)

    def test_trigger_real_backup(self, backup_config):
        manager = BackupManager(backup_config)
        scheduler = BackupScheduler(manager, backup_config)

        record = scheduler.trigger_backup('monthly')

        assert record.type == 'monthly'
        assert os.path.isfile(record.path)
        assert manager.verify_backup(record.path) is True

    def test_trigger_reraises_and_alerts(self, mock_manager, backup_config):
        mock_manager.create_backup.side_effect = ExecutionError('pg_dump not found')
        alert_sink = MagicMock()
        scheduler = BackupScheduler(mock_manager, backup_config, alert_sink=alert_sink)
        threads = []
        original = scheduler.handle_backup_failure
        scheduler.handle_backup_failure = lambda *args: threads.append(original(*args))

        with pytest.raises(ExecutionError):
            scheduler.trigger_backup('daily')

        threads[0].join(timeout=5)
        alert_sink.send.assert_called_once()
        event = alert_sink.send.call_args[0][0]
        assert isinstance(event, AlertEvent)
        assert event.type == 'daily'
        assert event.error == 'pg_dump not found'


class TestHandleBackupFailure:

    def test_no_sink_returns_none(self, mock_manager, backup_config):
        scheduler = BackupScheduler(mock_manager, backup_config)
        assert scheduler.handle_backup_failure('daily', RuntimeError('boom')) is None

    def test_delivery_failure_is_logged_not_raised(self, mock_manager, backup_config, caplog):
        alert_sink = MagicMock()
        alert_sink.send.side_effect = AlertDeliveryError('Webhook request failed: 500')
        scheduler = BackupScheduler(mock_manager, backup_config, alert_sink=alert_sink)

        with caplog.at_level(logging.ERROR):
            thread = scheduler.handle_backup_failure('daily', RuntimeError('boom'))
            thread.join(timeout=5)

        assert 'Failed to send backup failure alert' in caplog.text


class TestHealthCheck:

    def test_healthy_with_recent_backup(self, mock_manager, backup_config):
        mock_manager.list_backups.return_value = [
            _record('daily', datetime.now() - timedelta(hours=2)),
            _record('weekly', datetime.now() - timedelta(days=3)),
        ]
        scheduler = BackupScheduler(mock_manager, backup_config)

        report = scheduler.health_check()

        assert report['healthy'] is True
        assert report['status'] == 'stopped'
        assert report['total_backups'] == 2
        assert report['recent_backups'] == 1
        assert report['last_backup']['size'] == '2.00 MB'

    def test_unhealthy_without_recent_backup(self, mock_manager, backup_config):
        mock_manager.list_backups.return_value = [_record('daily', datetime.now() - timedelta(days=2))]
        scheduler = BackupScheduler(mock_manager, backup_config)

        report = scheduler.health_check()

        assert report['healthy'] is False
        assert report['recent_backups'] == 0

    def test_running_scheduler_reports_jobs(self, mock_manager, backup_config, scheduler_factory):
        scheduler = scheduler_factory(mock_manager, backup_config)
        scheduler.start()

        report = scheduler.health_check()

        assert report['status'] == 'healthy'
        assert report['active_jobs'] == 3
        assert report['last_backup'] is None

    def test_errors_are_reported_not_raised(self, mock_manager, backup_config):
        mock_manager.list_backups.side_effect = OSError('backup dir unreadable')
        scheduler = BackupScheduler(mock_manager, backup_config)

        report = scheduler.health_check()

        assert report['status'] == 'error'
        assert 'unreadable' in report['error']
