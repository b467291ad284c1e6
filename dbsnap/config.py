import os
import secrets
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(environ.get(name, ''))
    except ValueError:
        return default


class Config:
    """Base configuration"""

    # Flask (no sessions are issued; the API authenticates every request)
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)

    # Data directory for state database, logs and default backup location
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Manifest database
    SQLALCHEMY_DATABASE_URI = os.environ.get('STATE_DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dbsnap.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer token required by the HTTP API (unset = API locked)
    API_TOKEN = os.environ.get('BACKUP_API_TOKEN')

    # Scheduler
    SCHEDULER_AUTOSTART = _env_bool(os.environ, 'SCHEDULER_AUTOSTART', True)
    SCHEDULER_PIDFILE = os.environ.get('SCHEDULER_PIDFILE') or os.path.join(DATA_DIR, 'backup-scheduler.pid')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dbsnap.db")}'
    SCHEDULER_PIDFILE = os.path.join(DATA_DIR, 'backup-scheduler.pid')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory manifest, no log files, no scheduler"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    LOG_DIR = None
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    API_TOKEN = 'test-api-token'
    SCHEDULER_AUTOSTART = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass(frozen=True)
class DatabaseConnection:
    """Connection parameters handed to the native tools via PG* variables."""

    host: str = 'localhost'
    port: int = 5432
    database: str = 'app'
    user: str = 'postgres'
    password: Optional[str] = field(default=None, repr=False)

    def to_env(self) -> Dict[str, str]:
        env = {
            'PGHOST': self.host,
            'PGPORT': str(self.port),
            'PGDATABASE': self.database,
            'PGUSER': self.user,
        }
        if self.password:
            env['PGPASSWORD'] = self.password
        return env


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention counts per tier: days, weeks and months respectively."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 6


@dataclass(frozen=True)
class RemoteStorageConfig:
    enabled: bool = False
    type: Optional[str] = None
    bucket: Optional[str] = None
    region: str = 'us-east-1'
    access_key: Optional[str] = field(default=None, repr=False)
    secret_key: Optional[str] = field(default=None, repr=False)
    endpoint_url: Optional[str] = None
    prefix: str = 'backups'


@dataclass(frozen=True)
class TierSchedule:
    """Cron binding for one scheduled tier."""

    name: str
    cron: str
    enabled: bool = True


DEFAULT_SCHEDULES = (
    TierSchedule('daily', '0 2 * * *'),     # 2:00 AM every day
    TierSchedule('weekly', '0 3 * * 0'),    # 3:00 AM every Sunday
    TierSchedule('monthly', '0 4 1 * *'),   # 4:00 AM on the 1st of every month
)


@dataclass(frozen=True)
class BackupConfig:
    """
    Process-wide backup configuration.

    Built once at startup (normally by BackupConfig.from_env) and never
    mutated afterwards.
    """

    backup_dir: str
    database: DatabaseConnection = field(default_factory=DatabaseConnection)
    app_name: str = 'dbsnap'
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    compress: bool = True
    compression_level: int = 6
    encrypt: bool = False
    encryption_key: Optional[str] = field(default=None, repr=False)
    remote: RemoteStorageConfig = field(default_factory=RemoteStorageConfig)
    schedules: Tuple[TierSchedule, ...] = DEFAULT_SCHEDULES
    timezone: str = 'UTC'
    failure_webhook: Optional[str] = field(default=None, repr=False)
    server_name: str = 'dbsnap-api'
    dump_timeout: Optional[int] = 3600
    restore_timeout: Optional[int] = 7200
    dump_command: str = 'pg_dump'
    restore_command: str = 'pg_restore'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, data_dir: Optional[str] = None) -> 'BackupConfig':
        """
        Load configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            data_dir: Base directory used when BACKUP_DIR is not set

        Returns:
            BackupConfig instance
        """
        env = os.environ if environ is None else environ
        data_dir = data_dir or env.get('DATA_DIR') or Config.DATA_DIR

        database = DatabaseConnection(
            host=env.get('DATABASE_HOST') or 'localhost',
            port=_env_int(env, 'DATABASE_PORT', 5432),
            database=env.get('DATABASE_NAME') or 'app',
            user=env.get('DATABASE_USER') or 'postgres',
            password=env.get('DATABASE_PASSWORD') or None,
        )

        retention = RetentionPolicy(
            daily=_env_int(env, 'BACKUP_RETENTION_DAILY', 7),
            weekly=_env_int(env, 'BACKUP_RETENTION_WEEKLY', 4),
            monthly=_env_int(env, 'BACKUP_RETENTION_MONTHLY', 6),
        )

        remote = RemoteStorageConfig(
            enabled=_env_bool(env, 'BACKUP_REMOTE_ENABLED', False),
            type=(env.get('BACKUP_REMOTE_TYPE') or '').lower() or None,
            bucket=env.get('BACKUP_S3_BUCKET') or None,
            region=env.get('BACKUP_S3_REGION') or 'us-east-1',
            access_key=env.get('BACKUP_S3_ACCESS_KEY') or None,
            secret_key=env.get('BACKUP_S3_SECRET_KEY') or None,
            endpoint_url=env.get('BACKUP_S3_ENDPOINT_URL') or None,
            prefix=env.get('BACKUP_S3_PREFIX') or 'backups',
        )

        schedules = tuple(
            TierSchedule(
                name=default.name,
                cron=env.get(f'BACKUP_SCHEDULE_{default.name.upper()}') or default.cron,
                enabled=env.get(f'BACKUP_ENABLE_{default.name.upper()}', '').strip().lower() != 'false',
            )
            for default in DEFAULT_SCHEDULES
        )

        dump_timeout = _env_int(env, 'BACKUP_DUMP_TIMEOUT', 3600)
        restore_timeout = _env_int(env, 'BACKUP_RESTORE_TIMEOUT', 7200)

        return cls(
            backup_dir=env.get('BACKUP_DIR') or os.path.join(data_dir, 'backups'),
            database=database,
            app_name=env.get('BACKUP_APP_NAME') or 'dbsnap',
            retention=retention,
            compress=env.get('BACKUP_COMPRESS', '').strip().lower() != 'false',
            compression_level=_env_int(env, 'BACKUP_COMPRESSION_LEVEL', 6),
            encrypt=env.get('BACKUP_ENCRYPT', '').strip().lower() == 'true',
            encryption_key=env.get('BACKUP_ENCRYPTION_KEY') or None,
            remote=remote,
            schedules=schedules,
            timezone=env.get('BACKUP_TIMEZONE') or 'UTC',
            failure_webhook=env.get('BACKUP_FAILURE_WEBHOOK') or None,
            server_name=env.get('BACKUP_SERVER_NAME') or 'dbsnap-api',
            dump_timeout=dump_timeout if dump_timeout > 0 else None,
            restore_timeout=restore_timeout if restore_timeout > 0 else None,
            dump_command=env.get('BACKUP_DUMP_COMMAND') or 'pg_dump',
            restore_command=env.get('BACKUP_RESTORE_COMMAND') or 'pg_restore',
        )

    def get_schedule(self, name: str) -> Optional[TierSchedule]:
        for schedule in self.schedules:
            if schedule.name == name:
                return schedule
        return None

    def sanitized(self) -> dict:
        """
        Configuration safe to expose to API callers.

        Connection credentials, storage keys, the encryption key and the
        webhook URL are never included.
        """
        return {
            'backup_dir': self.backup_dir,
            'retention': {
                'daily': self.retention.daily,
                'weekly': self.retention.weekly,
                'monthly': self.retention.monthly,
            },
            'compress': self.compress,
            'encrypt': self.encrypt,
            'remote_storage': {
                'enabled': self.remote.enabled,
                'type': self.remote.type,
            },
            'schedules': {s.name: s.cron for s in self.schedules},
            'enabled': {s.name: s.enabled for s in self.schedules},
            'timezone': self.timezone,
            'failure_webhook_configured': bool(self.failure_webhook),
        }
