"""Sync service: the entry point used by the API and the CLI to run syncs."""

import logging
from functools import lru_cache
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from pingtone.database.database import SessionLocal
from pingtone.models import SyncHistory, SyncStatus
from pingtone.models.sync_history import describe_outcome
from pingtone.services.axl_client import AxlClient
from pingtone.services.batch_coordinator import BatchCoordinator
from pingtone.services.cluster_service import ClusterService
from pingtone.services.encryption_service import EncryptionService
from pingtone.services.phase_sequencer import PhaseSequencer, SyncRun
from pingtone.services.sync_history_recorder import SyncHistoryRecorder, SyncInProgressError
from pingtone.services.sync_target import SyncTargetError, SyncTargetNotFoundError, SyncTargetType

logger = logging.getLogger(__name__)

__all__ = [
    "SyncService",
    "SyncInProgressError",
    "SyncTargetError",
    "SyncTargetNotFoundError",
    "build_sync_service",
    "get_sync_service",
]


class SyncService:
    """Service for starting and inspecting UCM sync runs."""

    def __init__(
        self,
        cluster_service: ClusterService,
        sequencer: PhaseSequencer,
        recorder: SyncHistoryRecorder,
        coordinator: BatchCoordinator,
    ):
        """Initialize sync service.

        Args:
            cluster_service: Resolves clusters and nodes into sync targets.
            sequencer: Drives runs through their phases.
            recorder: Sync history ledger.
            coordinator: Batch coordinator shared by all runs.
        """
        self.cluster_service = cluster_service
        self.sequencer = sequencer
        self.recorder = recorder
        self.coordinator = coordinator

    async def start_sync(self, db: Session, target_type: SyncTargetType, target_id: int) -> SyncRun:
        """Start a sync run and return without waiting for it.

        Args:
            db: Database session.
            target_type: Cluster or node.
            target_id: Cluster or node ID.

        Returns:
            The new SyncRun, already running in the background.

        Raises:
            SyncTargetNotFoundError: If the target does not exist.
            SyncInProgressError: If the target already has an open run.
            SyncTargetError: If the target's credentials are unusable; a
                failed history entry is recorded.
        """
        target_type = SyncTargetType(target_type)
        try:
            target = self.cluster_service.snapshot_target(db, target_type, target_id)
        except SyncTargetError as e:
            handle = self.recorder.open_key(target_type.value, target_id)
            self.recorder.close(handle, SyncStatus.FAILED, error=str(e))
            logger.error(f"Sync of {target_type.value} {target_id} could not start: {e}")
            raise

        return await self.sequencer.start(target)

    async def sync_all(self, db: Session) -> dict:
        """Start a run for every cluster.

        Returns:
            Dict with the ``started`` runs, ``busy`` cluster ids and ``failed``
            cluster ids mapped to their error.
        """
        result = {"started": [], "busy": [], "failed": {}}
        for cluster in self.cluster_service.list_clusters(db):
            try:
                run = await self.start_sync(db, SyncTargetType.CLUSTER, cluster.id)
                result["started"].append(run)
            except SyncInProgressError:
                logger.info(f"Cluster {cluster.name} is already syncing, skipping")
                result["busy"].append(cluster.id)
            except SyncTargetError as e:
                result["failed"][cluster.id] = str(e)
        return result

    async def wait_for_run(self, run: SyncRun) -> SyncRun:
        return await self.sequencer.wait(run)

    def get_status(self, target_type: SyncTargetType, target_id: int) -> dict:
        """Current phase, batch states and latest history entry of a target."""
        target_type = SyncTargetType(target_type)
        run = self.sequencer.latest_run(target_type.value, target_id)
        latest = self.recorder.latest(target_type.value, target_id)

        status = {
            "target_type": target_type.value,
            "target_id": target_id,
            "phase": run.phase.value if run else None,
            "run": run.to_dict() if run else None,
            "infra_batch": None,
            "services_batch": None,
            "last_history": latest.to_dict() if latest else None,
            "outcome": describe_outcome(latest).value,
        }
        if run and run.infra_batch_id:
            status["infra_batch"] = self.coordinator.status(run.infra_batch_id).to_dict()
        if run and run.services_batch_id:
            status["services_batch"] = self.coordinator.status(run.services_batch_id).to_dict()
        return status

    def get_sync_history(
        self,
        target_type: Optional[SyncTargetType] = None,
        target_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[SyncHistory]:
        syncable_type = SyncTargetType(target_type).value if target_type else None
        return self.recorder.history(syncable_type, target_id, limit)

    def get_sync_record(self, history_id: int) -> Optional[SyncHistory]:
        return self.recorder.get(history_id)

    def mark_failed(self, history_id: int, error: str = "Marked as failed by operator") -> SyncHistory:
        """Close an open history entry by hand so the target can be synced again.

        A run still live in this process is cancelled too, so it cannot keep
        writing alongside the next run for the same target.

        Raises:
            ValueError: If the entry does not exist.
        """
        entry = self.recorder.mark_failed(history_id, error)
        run = self.sequencer.cancel(history_id)
        if run is not None:
            logger.info(f"Abandoned sync run {run.id} for {run.target.label}")
        return entry

    def is_sync_in_progress(self, target_type: SyncTargetType, target_id: int) -> bool:
        return self.recorder.is_open(SyncTargetType(target_type).value, target_id)


def build_sync_service(
    session_factory=SessionLocal,
    encryption_service: Optional[EncryptionService] = None,
    client_factory: Callable = AxlClient,
    concurrency: Optional[int] = None,
    **sequencer_options,
) -> SyncService:
    """Wire a SyncService and its collaborators.

    Args:
        session_factory: Callable returning a new database session.
        encryption_service: Defaults to one built from settings.
        client_factory: Callable building an async-context AXL client for a SyncTarget.
        concurrency: Worker pool size of the batch coordinator.
        **sequencer_options: Passed to PhaseSequencer (poll_interval, max_attempts, ...).
    """
    cluster_service = ClusterService(encryption_service or EncryptionService(), client_factory)
    coordinator = BatchCoordinator(concurrency)
    recorder = SyncHistoryRecorder(session_factory)
    sequencer = PhaseSequencer(
        coordinator,
        recorder,
        session_factory,
        client_factory=client_factory,
        **sequencer_options,
    )
    return SyncService(cluster_service, sequencer, recorder, coordinator)


@lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    """Process-wide SyncService; runs and batches live in its memory."""
    return build_sync_service()
