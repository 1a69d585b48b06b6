"""
Database migrations for the restorekit state store.

Simple additive migration system: tables are created when missing and
columns introduced after the first release are added in place, so an
older state database keeps loading without Alembic.
"""

import logging
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from restorekit.models import Base

logger = logging.getLogger(__name__)


# (table, column, DDL type) in the order they were introduced
ADDITIVE_COLUMNS = [
    ('backup_history', 'encrypted', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('backup_history', 'file_count', 'INTEGER'),
]


def init_database_schema(engine: Engine):
    """
    Initialize database schema and run migrations.

    Creates tables that do not exist yet, then adds any missing columns.
    Errors from the database driver propagate to the caller.
    """
    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()

    if not existing_tables:
        logger.info("No tables found - creating initial state schema")
        Base.metadata.create_all(engine)
        return

    # Creates only the tables that are missing
    Base.metadata.create_all(engine)
    run_migrations(engine, inspect(engine))


def run_migrations(engine: Engine, inspector=None):
    """
    Run all necessary database migrations.

    Checks each table for the columns in ADDITIVE_COLUMNS and adds the ones
    that are missing. Unknown extra columns are left alone.
    """
    if inspector is None:
        inspector = inspect(engine)

    tables = inspector.get_table_names()
    columns_by_table = {}

    for table, column, ddl in ADDITIVE_COLUMNS:
        if table not in tables:
            continue

        if table not in columns_by_table:
            columns_by_table[table] = {col['name'] for col in inspector.get_columns(table)}

        if column in columns_by_table[table]:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        with engine.begin() as connection:
            connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
        columns_by_table[table].add(column)
        logger.info(f"Successfully added {column} column")
