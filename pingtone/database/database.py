"""Database configuration and session management."""

import os
import logging
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from pingtone.config import settings

logger = logging.getLogger(__name__)


def _create_engine(database_url: str):
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    if is_sqlite and url.database and url.database != ":memory:":
        directory = os.path.dirname(url.database)
        if directory:
            os.makedirs(directory, exist_ok=True)

    # Sync units write from worker code while API requests read
    return create_engine(database_url, connect_args={"check_same_thread": False} if is_sqlite else {})


engine = _create_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Yield a session per request and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create missing tables and bring older databases up to date.

    Safe to run on every start: existing tables are left alone and only
    the column migrations that are still missing get applied.

    Args:
        bind: Engine to initialize instead of the configured one.
    """
    # Registers every model with Base.metadata
    import pingtone.models  # noqa: F401

    bind = bind or engine
    existing_tables = inspect(bind).get_table_names()
    if existing_tables:
        logger.info(f"Initializing database with {len(existing_tables)} existing tables")
    else:
        logger.info("Initializing empty database")

    Base.metadata.create_all(bind=bind)

    if existing_tables:
        from pingtone.database.migrations import migrate_database
        db = sessionmaker(bind=bind)()
        try:
            migrate_database(db)
        finally:
            db.close()

    logger.info(f"Database ready with {len(inspect(bind).get_table_names())} tables")
