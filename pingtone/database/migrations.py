"""Column migrations for databases created by older PingTone releases."""

import logging
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# (table, column, DDL type) added after the initial schema shipped
COLUMN_MIGRATIONS = [
    ("ucm_clusters", "ssh_username", "VARCHAR"),
    ("ucm_clusters", "ssh_password_encrypted", "VARCHAR"),
    ("ucm_clusters", "last_sync_at", "DATETIME"),
    ("ucm_nodes", "node_role", "VARCHAR"),
    ("sync_histories", "warnings", "JSON"),
]


def _existing_columns(inspector, table: str) -> set:
    return {col["name"] for col in inspector.get_columns(table)}


def migrate_database(db: Session) -> None:
    """Add every column from COLUMN_MIGRATIONS that an existing table lacks.

    Tables that do not exist yet are skipped; ``create_all`` builds them
    with the full column set. Running it again is a no-op.

    Args:
        db: Database session.
    """
    inspector = inspect(db.get_bind())
    tables = set(inspector.get_table_names())
    applied = 0

    for table, column, ddl_type in COLUMN_MIGRATIONS:
        if table not in tables or column in _existing_columns(inspector, table):
            continue

        logger.info(f"Adding column {table}.{column}")
        try:
            db.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
            db.commit()
            applied += 1
        except Exception as e:
            logger.error(f"Failed to add column {table}.{column}: {e}")
            db.rollback()

    logger.info(f"Column migrations checked, {applied} applied")


def get_migration_status(db: Session) -> dict:
    """List the tables and the migrated columns already present.

    Returns:
        Dict with ``tables`` and ``migrations_applied`` ("table.column" entries).
    """
    inspector = inspect(db.get_bind())
    tables = inspector.get_table_names()
    applied = [
        f"{table}.{column}"
        for table, column, _ddl_type in COLUMN_MIGRATIONS
        if table in tables and column in _existing_columns(inspector, table)
    ]
    return {"tables": tables, "migrations_applied": applied}
