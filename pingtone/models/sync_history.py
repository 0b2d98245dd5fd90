"""Sync history database model."""

import enum
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, CheckConstraint, Index
from pingtone.database.database import Base


class SyncStatus(str, enum.Enum):
    """Persisted status of a sync attempt."""

    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def color(self) -> str:
        return {
            SyncStatus.SYNCING: "blue",
            SyncStatus.COMPLETED: "green",
            SyncStatus.FAILED: "red",
        }[self]


class SyncOutcome(str, enum.Enum):
    """User-facing summary of a target's latest sync."""

    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class SyncHistory(Base):
    """Append-only ledger entry for one sync attempt against a cluster or node."""

    __tablename__ = "sync_histories"

    id = Column(Integer, primary_key=True, index=True)
    syncable_type = Column(String, nullable=False)  # cluster or node
    syncable_id = Column(Integer, nullable=False)
    sync_start_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    sync_end_time = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default=SyncStatus.SYNCING.value)
    error = Column(Text, nullable=True)
    warnings = Column(JSON, nullable=True)
    # "<type>:<id>" while open, NULL once closed; unique so only one open entry per target
    open_lock = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('syncing', 'completed', 'failed')", name="ck_sync_histories_status"),
        CheckConstraint("syncable_type IN ('cluster', 'node')", name="ck_sync_histories_syncable_type"),
        Index("ix_sync_histories_syncable", "syncable_type", "syncable_id"),
    )

    @staticmethod
    def lock_key(syncable_type: str, syncable_id: int) -> str:
        return f"{syncable_type}:{syncable_id}"

    @property
    def is_open(self) -> bool:
        return self.status == SyncStatus.SYNCING.value and self.sync_end_time is None

    @property
    def duration(self) -> Optional[int]:
        """Duration of the sync in whole seconds, once it has ended."""
        if not self.sync_start_time or not self.sync_end_time:
            return None
        return int((self.sync_end_time - self.sync_start_time).total_seconds())

    @property
    def formatted_duration(self) -> Optional[str]:
        duration = self.duration
        if duration is None:
            return None
        if duration < 60:
            return f"{duration}s"
        minutes, seconds = divmod(duration, 60)
        return f"{minutes}m {seconds}s"

    @property
    def outcome(self) -> SyncOutcome:
        if self.status == SyncStatus.SYNCING.value:
            return SyncOutcome.SYNCING
        if self.status == SyncStatus.FAILED.value:
            return SyncOutcome.FAILED
        if self.warnings:
            return SyncOutcome.COMPLETED_WITH_ERRORS
        return SyncOutcome.COMPLETED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "syncable_type": self.syncable_type,
            "syncable_id": self.syncable_id,
            "sync_start_time": self.sync_start_time.isoformat() if self.sync_start_time else None,
            "sync_end_time": self.sync_end_time.isoformat() if self.sync_end_time else None,
            "status": self.status,
            "status_label": SyncStatus(self.status).label,
            "status_color": SyncStatus(self.status).color,
            "error": self.error,
            "warnings": self.warnings or [],
            "duration": self.duration,
            "formatted_duration": self.formatted_duration,
            "outcome": self.outcome.value,
        }


def describe_outcome(history: Optional[SyncHistory]) -> SyncOutcome:
    """Map a target's latest history entry (or its absence) to a user-facing outcome."""
    if history is None:
        return SyncOutcome.NEVER_SYNCED
    return history.outcome
