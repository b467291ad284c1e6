"""
Shared pytest fixtures for dbsnap tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Fake pg_dump / pg_restore tools (Python scripts run with sys.executable)
- Backup configuration and manager rooted in a temporary directory
- Mock fixtures for external services (S3)
"""

import os
import shlex
import sys
import textwrap
from datetime import datetime, timedelta

import pytest
import boto3
from moto import mock_aws

from dbsnap import create_app, db as _db
from dbsnap.backup import BackupManager
from dbsnap.config import BackupConfig, DatabaseConnection


DB_PASSWORD = 's3cret-password'
API_TOKEN = 'test-api-token'

# Behaviour is selected with FAKE_DUMP_MODE: ok (default), fail, hang
FAKE_PG_DUMP = textwrap.dedent('''
    import json
    import os
    import sys
    import time

    mode = os.environ.get('FAKE_DUMP_MODE', 'ok')
    out = sys.stdout.buffer

    if mode == 'fail':
        out.write(b'PGDMP partial output')
        out.flush()
        sys.stderr.write('pg_dump: error: connection to server failed: Connection refused\\n')
        sys.exit(1)

    out.write(b'PGDMP')
    out.write(json.dumps({
        'argv': sys.argv[1:],
        'host': os.environ.get('PGHOST'),
        'database': os.environ.get('PGDATABASE'),
        'user': os.environ.get('PGUSER'),
        'password_set': bool(os.environ.get('PGPASSWORD')),
    }).encode() + b'\\n')
    out.flush()

    if mode == 'hang':
        time.sleep(30)

    # Enough data to span several read chunks
    for i in range(2000):
        out.write(b'INSERT INTO items VALUES (%d);\\n' % i)
    sys.stderr.write('pg_dump: dumping contents of table "public.items"\\n')
''')

# Copies the dump (file argument or stdin) to FAKE_RESTORE_OUTPUT
FAKE_PG_RESTORE = textwrap.dedent('''
    import os
    import sys

    if os.environ.get('FAKE_RESTORE_MODE') == 'fail':
        sys.stderr.write('pg_restore: error: could not connect to database\\n')
        sys.exit(1)

    files = [arg for arg in sys.argv[1:] if not arg.startswith('--')]
    if files:
        with open(files[0], 'rb') as f:
            data = f.read()
    else:
        data = sys.stdin.buffer.read()

    target = os.environ.get('FAKE_RESTORE_OUTPUT')
    if target:
        with open(target, 'wb') as f:
            f.write(data)
        with open(target + '.args', 'w') as f:
            f.write('\\n'.join(sys.argv[1:]))
    print('restored %d bytes' % len(data))
''')


@pytest.fixture
def fake_tools(tmp_path):
    """
    Write fake pg_dump / pg_restore scripts.

    Returns:
        Dict with 'dump' and 'restore' command strings
    """
    tools_dir = tmp_path / 'tools'
    tools_dir.mkdir()
    dump_script = tools_dir / 'fake_pg_dump.py'
    restore_script = tools_dir / 'fake_pg_restore.py'
    dump_script.write_text(FAKE_PG_DUMP)
    restore_script.write_text(FAKE_PG_RESTORE)

    return {
        'dump': shlex.join([sys.executable, str(dump_script)]),
        'restore': shlex.join([sys.executable, str(restore_script)]),
    }


@pytest.fixture
def backup_dir(tmp_path):
    return str(tmp_path / 'backups')


@pytest.fixture
def backup_config(backup_dir, fake_tools):
    """Backup configuration using the fake tools and a temporary backup dir."""
    return BackupConfig(
        backup_dir=backup_dir,
        database=DatabaseConnection(
            host='db.test',
            port=5432,
            database='appdb',
            user='backup',
            password=DB_PASSWORD
        ),
        app_name='app',
        compress=True,
        dump_timeout=30,
        restore_timeout=30,
        dump_command=fake_tools['dump'],
        restore_command=fake_tools['restore']
    )


@pytest.fixture
def plain_config(backup_config):
    """Same as backup_config but writing uncompressed .sql dumps."""
    from dataclasses import replace
    return replace(backup_config, compress=False)


@pytest.fixture
def manager(backup_config):
    """Backup manager in pure filesystem mode (no manifest)."""
    return BackupManager(backup_config)


@pytest.fixture(scope='function')
def app(backup_config, tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite for the manifest and never starts the scheduler.
    """
    app = create_app('testing', backup_config=backup_config, start_scheduler=False)

    app.config.update({
        'SCHEDULER_PIDFILE': str(tmp_path / 'backup-scheduler.pid'),
    })

    yield app

    app.extensions['backup_scheduler'].stop()


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def auth_headers():
    return {'Authorization': f'Bearer {API_TOKEN}'}


@pytest.fixture
def make_backup_file(backup_dir):
    """
    Factory creating a file in the backup directory with a given age.

    Usage: make_backup_file('app_daily_2024-01-01_02-00-00.sql', age=timedelta(days=3))
    """
    def _make(filename, age=timedelta(0), content=b'PGDMP test dump', now=None):
        os.makedirs(backup_dir, exist_ok=True)
        path = os.path.join(backup_dir, filename)
        with open(path, 'wb') as f:
            f.write(content)
        mtime = ((now or datetime.now()) - age).timestamp()
        os.utime(path, (mtime, mtime))
        return path

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
