"""Immutable description of what a sync run talks to."""

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


class SyncTargetType(str, enum.Enum):
    """Kind of UCM entity a sync run is attached to."""

    CLUSTER = "cluster"
    NODE = "node"


@dataclass(frozen=True)
class SyncTarget:
    """Snapshot of a cluster or node taken when a run starts.

    Credentials are resolved and decrypted once; later edits to the stored
    cluster do not affect a run already in flight. Records are always scoped
    to ``cluster_id``, including for node targets.
    """

    target_type: SyncTargetType
    target_id: int
    cluster_id: int
    name: str
    hostname: str
    username: str
    password: str = field(repr=False)
    schema_version: str
    ssh_username: Optional[str] = None
    ssh_password: Optional[str] = field(default=None, repr=False)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.target_type.value, self.target_id)

    @property
    def label(self) -> str:
        return f"{self.target_type.value} {self.name} ({self.target_id})"


class SyncTargetNotFoundError(ValueError):
    """No cluster or node with the requested id."""


class SyncTargetError(ValueError):
    """The target exists but cannot be synced (missing or unreadable credentials)."""
