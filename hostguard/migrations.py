"""
Catalog schema migrations for hostguard.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect

from hostguard import Base

logger = logging.getLogger(__name__)


# (table, column, DDL type) added after the first catalog release
COLUMN_MIGRATIONS = [
    ('backup_records', 'state', "VARCHAR(20) NOT NULL DEFAULT 'sealed'"),
    ('backup_records', 'pruned_at', 'TIMESTAMP'),
    ('backup_sections', 'message', 'TEXT'),
]


def init_database_schema(engine):
    """
    Initialize the catalog schema and run migrations.

    Creates tables if they don't exist and adds columns introduced by later
    releases to existing catalogs.
    """
    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()

    if not existing_tables:
        logger.info("No tables found - creating catalog schema")
        Base.metadata.create_all(engine)
        logger.info("Catalog schema created successfully")
    else:
        run_migrations(engine, inspector)


def run_migrations(engine, inspector=None):
    """
    Run all necessary catalog migrations.

    Checks the catalog schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(engine)

    # Tables added since the catalog was first created
    Base.metadata.create_all(engine, checkfirst=True)

    for table, column, ddl_type in COLUMN_MIGRATIONS:
        if table not in inspector.get_table_names():
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        with engine.begin() as conn:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
        logger.info(f"Successfully added {column} column")
