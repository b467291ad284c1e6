"""
Command line interface for dbsnap.

Two command groups:
- backup-database: create [type], list, cleanup, restore <path>, verify <path>
- backup-scheduler: start, stop, status, health, trigger <type>

Both are also mounted on the flask command as `flask backup` and
`flask scheduler`. Every command runs inside an application context and
uses the BackupManager / BackupScheduler built by the application factory.
"""

import json
import logging
import os
import signal
import threading
from typing import Optional

import click
from flask import current_app
from flask.cli import ScriptInfo, with_appcontext

logger = logging.getLogger(__name__)


def _manager():
    return current_app.extensions['backup_manager']


def _scheduler():
    return current_app.extensions['backup_scheduler']


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str):
    logger.error(f"Command failed: {message}")
    click.echo(f"Error: {message}", err=True)
    click.get_current_context().exit(1)


# PID file helpers for the scheduler daemon

def read_pidfile(path: str) -> Optional[int]:
    try:
        with open(path, 'r') as f:
            return int(f.read().strip())
    except (FileNotFoundError, ValueError):
        return None


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


def running_scheduler_pid(path: str) -> Optional[int]:
    """PID from the PID file if that process is still alive, else None."""
    pid = read_pidfile(path)
    if pid is not None and is_process_alive(pid):
        return pid
    return None


def write_pidfile(path: str):
    pid_dir = os.path.dirname(path)
    if pid_dir:
        os.makedirs(pid_dir, exist_ok=True)
    with open(path, 'w') as f:
        f.write(str(os.getpid()))


def remove_pidfile(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


# backup-database

@click.group('backup-database', help='Create, list, clean up, verify and restore database backups.')
def backup_database():
    pass


@backup_database.command('create')
@click.argument('backup_type', default='manual')
@with_appcontext
def create_command(backup_type):
    """Create a new backup (types: manual, daily, weekly, monthly)."""
    try:
        record = _manager().create_backup(backup_type)
    except Exception as e:
        _fail(str(e))
    _echo_json(record.to_dict())


@backup_database.command('list')
@with_appcontext
def list_command():
    """List all existing backups, newest first."""
    try:
        backups = _manager().list_backups()
    except Exception as e:
        _fail(str(e))
    _echo_json([backup.to_dict() for backup in backups])


@backup_database.command('cleanup')
@with_appcontext
def cleanup_command():
    """Remove old backups according to the retention policy."""
    try:
        summary = _manager().clean_old_backups()
    except Exception as e:
        _fail(str(e))
    _echo_json(summary)


@backup_database.command('restore')
@click.argument('backup_path', type=click.Path())
@with_appcontext
def restore_command(backup_path):
    """Restore the database from a backup file."""
    try:
        result = _manager().restore_from_backup(backup_path)
    except Exception as e:
        _fail(str(e))
    click.echo(f"Restore completed from {backup_path} in {result.duration:.1f}s")


@backup_database.command('verify')
@click.argument('backup_path', type=click.Path())
@with_appcontext
def verify_command(backup_path):
    """Verify backup file integrity. Exits 1 when the backup is corrupted."""
    is_valid = _manager().verify_backup(backup_path)
    click.echo('Backup is valid' if is_valid else 'Backup is corrupted')
    if not is_valid:
        click.get_current_context().exit(1)


# backup-scheduler

@click.group('backup-scheduler', help='Run and inspect the backup scheduler.')
def backup_scheduler():
    pass


@backup_scheduler.command('start')
@with_appcontext
def start_command():
    """Start the scheduler and block until SIGINT or SIGTERM."""
    pidfile = current_app.config['SCHEDULER_PIDFILE']
    scheduler = _scheduler()

    existing = running_scheduler_pid(pidfile)
    if existing is not None and existing != os.getpid():
        _fail(f"Backup scheduler is already running (pid {existing})")

    if not scheduler.start():
        _fail("No valid backup schedules configured")

    write_pidfile(pidfile)
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping scheduler...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    click.echo(f"Backup scheduler started (pid {os.getpid()})")

    try:
        while not stop_event.wait(1):
            pass
    finally:
        scheduler.stop()
        remove_pidfile(pidfile)

    click.echo("Backup scheduler stopped")


@backup_scheduler.command('stop')
@with_appcontext
def stop_command():
    """Stop a scheduler started with `start`."""
    pidfile = current_app.config['SCHEDULER_PIDFILE']
    pid = read_pidfile(pidfile)

    if pid is None:
        click.echo("Backup scheduler is not running")
        return

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        remove_pidfile(pidfile)
        click.echo(f"Backup scheduler is not running (removed stale pid file for {pid})")
        return
    except PermissionError as e:
        _fail(f"Cannot signal scheduler process {pid}: {e}")

    click.echo(f"Sent SIGTERM to backup scheduler (pid {pid})")


@backup_scheduler.command('status')
@with_appcontext
def status_command():
    """Show scheduler status and next run times."""
    status = _scheduler().get_status()
    if not status['running']:
        pid = running_scheduler_pid(current_app.config['SCHEDULER_PIDFILE'])
        status['running'] = pid is not None
        status['pid'] = pid
    _echo_json(status)


@backup_scheduler.command('health')
@with_appcontext
def health_command():
    """Perform a health check."""
    _echo_json(_scheduler().health_check())


@backup_scheduler.command('trigger')
@click.argument('backup_type', default='manual')
@with_appcontext
def trigger_command(backup_type):
    """Manually trigger a backup (daily, weekly, monthly, manual)."""
    try:
        record = _scheduler().trigger_backup(backup_type)
    except Exception as e:
        _fail(str(e))
    _echo_json(record.to_dict())


# Console script entry points

def _script_info() -> ScriptInfo:
    from dbsnap import create_app
    return ScriptInfo(create_app=lambda: create_app(start_scheduler=False))


def backup_database_main():
    backup_database.main(obj=_script_info())


def backup_scheduler_main():
    backup_scheduler.main(obj=_script_info())
