"""
Backup routes - list, create, cleanup, verify and scheduler control.
"""

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from dbsnap.backup.records import BACKUP_TYPES, InvalidBackupTypeError


logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _manager():
    return current_app.extensions['backup_manager']


def _scheduler():
    return current_app.extensions['backup_scheduler']


def _error(error: str, message: str, status: int = 500):
    return jsonify({
        'success': False,
        'error': error,
        'message': message
    }), status


def _invalid_type(message: str):
    return _error('Invalid backup type', message, 400)


@bp.route('/', methods=['GET'])
@login_required
def list_backups():
    """
    List all backups, newest first.

    Returns:
        JSON with backups, total count and total size in bytes
    """
    try:
        backups = _manager().list_backups()
    except Exception as e:
        logger.error(f"Failed to list backups: {e}")
        return _error('Failed to list backups', str(e))

    now = datetime.now()
    backups_data = []
    for backup in backups:
        data = backup.to_dict()
        data['age_in_days'] = (now - backup.created).days
        backups_data.append(data)

    logger.info(f"Backup list requested ({len(backups)} backups)")

    return jsonify({
        'success': True,
        'backups': backups_data,
        'total_backups': len(backups),
        'total_size': sum(backup.size for backup in backups)
    })


@bp.route('/create', methods=['POST'])
@login_required
def create_backup():
    """
    Create a new backup.

    Request body:
        - type: manual (default), daily, weekly or monthly

    Returns:
        JSON with the new backup
    """
    data = request.get_json(silent=True) or {}
    backup_type = data.get('type') or 'manual'

    logger.info(f"Backup creation requested (type: {backup_type})")

    try:
        record = _manager().create_backup(backup_type)
    except InvalidBackupTypeError as e:
        return _invalid_type(str(e))
    except Exception as e:
        logger.error(f"Backup creation failed (type: {backup_type}): {e}")
        return _error('Backup creation failed', str(e))

    return jsonify({
        'success': True,
        'backup': record.to_dict(),
        'message': 'Backup created successfully'
    })


@bp.route('/cleanup', methods=['POST'])
@login_required
def cleanup_backups():
    """Delete backups past their tier's retention window."""
    logger.info("Backup cleanup requested")

    try:
        summary = _manager().clean_old_backups()
    except Exception as e:
        logger.error(f"Backup cleanup failed: {e}")
        return _error('Backup cleanup failed', str(e))

    return jsonify({
        'success': True,
        'deleted': summary['deleted'],
        'deleted_files': summary['deleted_files'],
        'errors': summary['errors'],
        'message': 'Backup cleanup completed successfully'
    })


@bp.route('/verify/<path:filename>', methods=['POST'])
@login_required
def verify_backup(filename):
    """
    Verify a backup's integrity.

    Args:
        filename: Bare backup filename inside the backup directory

    Returns:
        JSON with isValid flag
    """
    manager = _manager()

    try:
        backup_path = manager.resolve_backup_path(filename)
    except ValueError as e:
        return _error('Invalid backup filename', str(e), 400)

    logger.info(f"Backup verification requested: {filename}")
    is_valid = manager.verify_backup(backup_path)

    return jsonify({
        'success': True,
        'filename': filename,
        'is_valid': is_valid,
        'message': 'Backup is valid' if is_valid else 'Backup is corrupted'
    })


@bp.route('/scheduler/status', methods=['GET'])
@login_required
def scheduler_status():
    try:
        status = _scheduler().get_status()
    except Exception as e:
        logger.error(f"Failed to get scheduler status: {e}")
        return _error('Failed to get scheduler status', str(e))

    return jsonify({'success': True, 'scheduler': status})


@bp.route('/scheduler/health', methods=['GET'])
@login_required
def scheduler_health():
    return jsonify({'success': True, 'health': _scheduler().health_check()})


@bp.route('/scheduler/trigger', methods=['POST'])
@login_required
def trigger_backup():
    """
    Run a scheduled-tier backup now, including cleanup and failure alerting.

    Request body:
        - type: daily, weekly, monthly or manual (required)
    """
    data = request.get_json(silent=True) or {}
    backup_type = data.get('type')

    if backup_type not in BACKUP_TYPES:
        return _invalid_type(f"Type must be one of: {', '.join(BACKUP_TYPES)}")

    logger.info(f"Scheduled backup trigger requested (type: {backup_type})")

    try:
        record = _scheduler().trigger_backup(backup_type)
    except Exception as e:
        logger.error(f"Scheduled backup trigger failed (type: {backup_type}): {e}")
        return _error('Scheduled backup trigger failed', str(e))

    return jsonify({
        'success': True,
        'backup': record.to_dict(),
        'message': f'{backup_type} backup triggered successfully'
    })


@bp.route('/config', methods=['GET'])
@login_required
def get_config():
    """Backup configuration without credentials, keys or webhook URL."""
    return jsonify({
        'success': True,
        'config': current_app.extensions['backup_config'].sanitized()
    })
