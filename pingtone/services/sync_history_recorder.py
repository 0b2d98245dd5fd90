"""Append-only ledger of sync attempts, and the guard against overlapping runs."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from pingtone.models import SyncHistory, SyncStatus, UcmCluster
from pingtone.services.sync_target import SyncTargetType

logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    """A sync is already open for the target."""


@dataclass(frozen=True)
class HistoryHandle:
    history_id: int
    syncable_type: str
    syncable_id: int
    started_at: datetime


class SyncHistoryRecorder:
    """Opens and closes SyncHistory rows.

    At most one row per target may be open (status syncing, no end time).
    ``open`` checks for an open row and inserts the new one under a
    process-wide lock; the unique ``open_lock`` column catches writers in
    other processes.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def _detach(self, db, history: SyncHistory) -> SyncHistory:
        db.refresh(history)
        db.expunge(history)
        return history

    def open(self, target) -> HistoryHandle:
        """Open a history entry for a SyncTarget.

        Raises:
            SyncInProgressError: If the target already has an open entry.
        """
        return self.open_key(*target.key)

    def open_key(self, syncable_type: str, syncable_id: int) -> HistoryHandle:
        """Open a history entry for a target given by type and id.

        Raises:
            SyncInProgressError: If the target already has an open entry.
        """
        with self._lock:
            db = self.session_factory()
            try:
                existing = (
                    db.query(SyncHistory)
                    .filter(
                        SyncHistory.syncable_type == syncable_type,
                        SyncHistory.syncable_id == syncable_id,
                        SyncHistory.status == SyncStatus.SYNCING.value,
                        SyncHistory.sync_end_time.is_(None),
                    )
                    .first()
                )
                if existing:
                    logger.warning(f"Sync already in progress for {syncable_type} {syncable_id} (history {existing.id})")
                    raise SyncInProgressError(
                        f"A sync is already in progress for {syncable_type} {syncable_id}"
                    )

                history = SyncHistory(
                    syncable_type=syncable_type,
                    syncable_id=syncable_id,
                    sync_start_time=datetime.utcnow(),
                    status=SyncStatus.SYNCING.value,
                    open_lock=SyncHistory.lock_key(syncable_type, syncable_id),
                )
                db.add(history)
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise SyncInProgressError(
                        f"A sync is already in progress for {syncable_type} {syncable_id}"
                    ) from e
                db.refresh(history)

                logger.info(f"Opened sync history {history.id} for {syncable_type} {syncable_id}")
                return HistoryHandle(
                    history_id=history.id,
                    syncable_type=syncable_type,
                    syncable_id=syncable_id,
                    started_at=history.sync_start_time,
                )
            finally:
                db.close()

    def close(
        self,
        handle: HistoryHandle,
        status: SyncStatus,
        error: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Optional[SyncHistory]:
        """Record the terminal status of a run.

        An entry that was already closed (for example marked failed by an
        operator) is left untouched. An entry deleted along with its target
        is logged and skipped. Completing a cluster run also stamps
        the cluster's ``last_sync_at``.

        Args:
            handle: Handle returned by open().
            status: COMPLETED or FAILED.
            error: Error message for failed runs.
            warnings: Per-unit error summaries.

        Returns:
            The detached history row, or None if the entry no longer exists.

        Raises:
            ValueError: If the status is not terminal.
        """
        if status == SyncStatus.SYNCING:
            raise ValueError("A history entry can only be closed as completed or failed")

        db = self.session_factory()
        try:
            history = db.get(SyncHistory, handle.history_id)
            if history is None:
                logger.warning(f"Sync history {handle.history_id} no longer exists; nothing to close")
                return None
            if not history.is_open:
                logger.warning(f"Sync history {history.id} was already closed as {history.status}")
                return self._detach(db, history)

            now = datetime.utcnow()
            history.status = status.value
            history.sync_end_time = now
            history.error = error
            history.warnings = list(warnings) if warnings else None
            history.open_lock = None

            if status == SyncStatus.COMPLETED and handle.syncable_type == SyncTargetType.CLUSTER.value:
                cluster = db.get(UcmCluster, handle.syncable_id)
                if cluster is not None:
                    cluster.last_sync_at = now

            db.commit()
            logger.info(f"Closed sync history {history.id} as {status.value}")
            return self._detach(db, history)
        finally:
            db.close()

    def mark_failed(self, history_id: int, error: str) -> SyncHistory:
        """Close an open entry out of band, abandoning its run.

        Raises:
            ValueError: If the entry does not exist.
        """
        history = self.get(history_id)
        if history is None:
            raise ValueError(f"Sync history {history_id} not found")
        handle = HistoryHandle(
            history_id=history.id,
            syncable_type=history.syncable_type,
            syncable_id=history.syncable_id,
            started_at=history.sync_start_time,
        )
        return self.close(handle, SyncStatus.FAILED, error=error)

    def get(self, history_id: int) -> Optional[SyncHistory]:
        db = self.session_factory()
        try:
            history = db.get(SyncHistory, history_id)
            return self._detach(db, history) if history else None
        finally:
            db.close()

    def latest(self, syncable_type: str, syncable_id: int) -> Optional[SyncHistory]:
        """Most recent entry for a target, open or closed."""
        db = self.session_factory()
        try:
            history = (
                db.query(SyncHistory)
                .filter(SyncHistory.syncable_type == syncable_type, SyncHistory.syncable_id == syncable_id)
                .order_by(SyncHistory.sync_start_time.desc(), SyncHistory.id.desc())
                .first()
            )
            return self._detach(db, history) if history else None
        finally:
            db.close()

    def history(
        self,
        syncable_type: Optional[str] = None,
        syncable_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[SyncHistory]:
        """Entries newest first, optionally for a single target."""
        db = self.session_factory()
        try:
            query = db.query(SyncHistory)
            if syncable_type:
                query = query.filter(SyncHistory.syncable_type == syncable_type)
            if syncable_id is not None:
                query = query.filter(SyncHistory.syncable_id == syncable_id)
            entries = query.order_by(SyncHistory.sync_start_time.desc(), SyncHistory.id.desc()).limit(limit).all()
            for entry in entries:
                db.expunge(entry)
            return entries
        finally:
            db.close()

    def is_open(self, syncable_type: str, syncable_id: int) -> bool:
        latest = self.latest(syncable_type, syncable_id)
        return latest is not None and latest.is_open
