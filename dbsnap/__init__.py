import atexit
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()

SQLITE_PREFIX = 'sqlite:///'


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))
    handlers = [console_handler]

    # File handler (skipped when no log directory is configured, e.g. tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dbsnap.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)

    # Configure root logger; every dbsnap module logger propagates to it
    logging.basicConfig(level=log_level, handlers=handlers)

    # app.logger is the "dbsnap" logger, parent of all module loggers
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _ensure_state_directory(app):
    uri = app.config['SQLALCHEMY_DATABASE_URI']
    if not uri.startswith(SQLITE_PREFIX):
        return
    db_path = uri[len(SQLITE_PREFIX):]
    db_dir = os.path.dirname(db_path)
    if db_path != ':memory:' and db_dir:
        os.makedirs(db_dir, exist_ok=True)


def _is_scheduler_process(app) -> bool:
    """
    Decide whether this process owns the backup scheduler.

    - Development: only the Flask reloader child process
    - Production: only the designated Gunicorn worker (SCHEDULER_WORKER=true)
    - The flask command line never autostarts it; use `flask scheduler start`
    """
    if os.environ.get('FLASK_RUN_FROM_CLI') == 'true':
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def create_app(config_name=None, backup_config=None, start_scheduler=None):
    """
    Flask application factory.

    Builds exactly one BackupConfig, BackupManager and BackupScheduler and
    stores them in app.extensions.

    Args:
        config_name: development, production or testing (default: FLASK_ENV)
        backup_config: Prebuilt BackupConfig (default: loaded from environment)
        start_scheduler: Force scheduler autostart on/off (default: decided
            from SCHEDULER_AUTOSTART and the process role)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dbsnap.config import config, BackupConfig
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the manifest database directory exists
    _ensure_state_directory(app)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    from dbsnap.auth import init_auth
    init_auth(app)

    # Register blueprints
    from dbsnap.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Liveness endpoint (no authentication)
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from dbsnap import models  # noqa: F401
    from dbsnap.migrations import init_database_schema
    init_database_schema(app)

    # Composition root for the backup subsystem
    from dbsnap.alerts import WebhookAlertSink
    from dbsnap.backup import BackupManager, ManifestStore, create_uploader
    from dbsnap.scheduler import BackupScheduler

    if backup_config is None:
        backup_config = BackupConfig.from_env(data_dir=app.config['DATA_DIR'])

    manager = BackupManager(
        backup_config,
        uploader=create_uploader(backup_config.remote),
        manifest=ManifestStore()
    )

    alert_sink = None
    if backup_config.failure_webhook:
        alert_sink = WebhookAlertSink(backup_config.failure_webhook, server_name=backup_config.server_name)

    scheduler = BackupScheduler(manager, backup_config, alert_sink=alert_sink, app=app)

    app.extensions['backup_config'] = backup_config
    app.extensions['backup_manager'] = manager
    app.extensions['backup_scheduler'] = scheduler

    # CLI: flask backup ... / flask scheduler ...
    from dbsnap.cli import backup_database, backup_scheduler
    app.cli.add_command(backup_database, name='backup')
    app.cli.add_command(backup_scheduler, name='scheduler')

    if start_scheduler is None:
        start_scheduler = app.config.get('SCHEDULER_AUTOSTART', True) and _is_scheduler_process(app)

    if start_scheduler:
        app.logger.info("Starting backup scheduler in this process...")
        if scheduler.start():
            # Stop cron jobs on interpreter shutdown
            atexit.register(scheduler.stop)
    else:
        app.logger.info("Backup scheduler not started in this process")

    return app
