"""
Database migrations for the dbsnap manifest.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from dbsnap import db

logger = logging.getLogger(__name__)

# Columns added after the first manifest release: name -> DDL type
MANIFEST_ADDED_COLUMNS = {
    'verified': 'BOOLEAN',
    'verified_at': 'TIMESTAMP',
    'remote_key': 'VARCHAR(500)',
}


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Safe to call from several Gunicorn workers at once.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if 'backup_manifest' not in existing_tables:
            logger.info("Manifest table not found - creating database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except SQLAlchemyError as e:
                # Another worker may have created it first
                logger.error(f"Failed to create database schema: {e}")
        else:
            run_migrations(inspector)


def run_migrations(inspector=None):
    """Add manifest columns missing from databases created by older releases."""
    if inspector is None:
        inspector = inspect(db.engine)

    columns = [col['name'] for col in inspector.get_columns('backup_manifest')]

    for name, ddl_type in MANIFEST_ADDED_COLUMNS.items():
        if name in columns:
            continue

        logger.info(f"Running migration: Adding {name} column to backup_manifest table")
        try:
            db.session.execute(text(f"ALTER TABLE backup_manifest ADD COLUMN {name} {ddl_type}"))
            db.session.commit()
            logger.info(f"Successfully added {name} column")
        except SQLAlchemyError as e:
            logger.error(f"Failed to add {name} column: {e}")
            db.session.rollback()
