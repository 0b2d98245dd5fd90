"""Chunked insert-or-update of synced rows keyed by their natural key."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pingtone.config import settings

logger = logging.getLogger(__name__)

_INSERT_ONLY_COLUMNS = ("id", "created_at")


def _dedupe(rows: Iterable[Dict[str, Any]], unique_by: Sequence[str]) -> List[Dict[str, Any]]:
    """Collapse rows sharing a natural key; the last one wins."""
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        by_key[tuple(row.get(column) for column in unique_by)] = row
    return list(by_key.values())


def _build_statement(dialect: str, table, rows: List[Dict[str, Any]], unique_by: Sequence[str]):
    update_columns = [c for c in rows[0] if c not in unique_by and c not in _INSERT_ONLY_COLUMNS]

    if dialect in ("sqlite", "postgresql"):
        insert = sqlite_insert if dialect == "sqlite" else postgresql_insert
        stmt = insert(table).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=list(unique_by),
            set_={column: stmt.excluded[column] for column in update_columns},
        )

    if dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(table).values(rows)
        return stmt.on_duplicate_key_update({column: stmt.inserted[column] for column in update_columns})

    raise ValueError(f"Bulk upsert is not supported for the '{dialect}' dialect")


def bulk_upsert(
    db: Session,
    model,
    rows: Iterable[Dict[str, Any]],
    unique_by: Sequence[str],
    chunk_size: Optional[int] = None,
) -> int:
    """Insert new rows and refresh existing ones, one atomic statement per chunk.

    ``created_at`` is only written when a row is inserted; every other
    column, ``updated_at`` included, is overwritten on conflict. Each chunk
    is committed on its own, so a failing chunk leaves earlier chunks in
    place.

    Args:
        db: Database session.
        model: Mapped class whose table is written.
        rows: Column dicts; all rows must carry the same keys.
        unique_by: Columns of the table's unique constraint.
        chunk_size: Rows per statement (defaults to settings.sync_upsert_chunk_size).

    Returns:
        Number of distinct rows written.

    Raises:
        SQLAlchemyError: If a chunk fails; the chunk is rolled back.
        ValueError: If the database dialect has no upsert construct.
    """
    chunk_size = chunk_size or settings.sync_upsert_chunk_size
    rows = _dedupe(rows, unique_by)
    if not rows:
        return 0

    dialect = db.get_bind().dialect.name
    table = model.__table__
    written = 0

    for start in range(0, len(rows), chunk_size):
        now = datetime.utcnow()
        chunk = [{**row, "created_at": now, "updated_at": now} for row in rows[start:start + chunk_size]]
        try:
            db.execute(_build_statement(dialect, table, chunk, unique_by))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Upsert into {table.name} failed after {written} rows: {e}")
            raise
        written += len(chunk)

    logger.debug(f"Upserted {written} rows into {table.name}")
    return written
