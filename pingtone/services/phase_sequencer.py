"""Two-phase sync run: infra batch first, then the services fan-out."""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pingtone.models import SyncStatus
from pingtone.services.axl_client import AxlClient, AxlError
from pingtone.services.batch_coordinator import BatchCoordinator, BatchState
from pingtone.services.entity_registry import INFRA_ENTITY_TYPES, SERVICE_ENTITY_TYPES
from pingtone.services.service_fanout import PhaseResult, ServiceFanOutRunner
from pingtone.services.sync_history_recorder import HistoryHandle, SyncHistoryRecorder
from pingtone.services.sync_target import SyncTarget
from pingtone.services.sync_unit_executor import SyncUnit, SyncUnitExecutor

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    INFRA_RUNNING = "infra_running"
    AWAITING_INFRA_COMPLETION = "awaiting_infra_completion"
    SERVICES_RUNNING = "services_running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncPhase.DONE, SyncPhase.FAILED)


_TRANSITIONS = {
    SyncPhase.INFRA_RUNNING: {SyncPhase.AWAITING_INFRA_COMPLETION, SyncPhase.FAILED},
    SyncPhase.AWAITING_INFRA_COMPLETION: {SyncPhase.SERVICES_RUNNING, SyncPhase.FAILED},
    SyncPhase.SERVICES_RUNNING: {SyncPhase.DONE, SyncPhase.FAILED},
    SyncPhase.DONE: set(),
    SyncPhase.FAILED: set(),
}


@dataclass
class SyncRun:
    """In-memory state of one run against one target."""

    id: str
    target: SyncTarget
    history_id: int
    phase: SyncPhase = SyncPhase.INFRA_RUNNING
    infra_batch_id: Optional[str] = None
    services_batch_id: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    def advance(self, phase: SyncPhase) -> None:
        """Move to the next phase.

        Raises:
            RuntimeError: If the transition is not allowed from the current phase.
        """
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Run {self.id} cannot move from {self.phase.value} to {phase.value}")
        logger.info(f"Run {self.id} ({self.target.label}): {self.phase.value} -> {phase.value}")
        self.phase = phase
        if phase.is_terminal:
            self.finished_at = datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "target_type": self.target.target_type.value,
            "target_id": self.target.target_id,
            "history_id": self.history_id,
            "phase": self.phase.value,
            "infra_batch_id": self.infra_batch_id,
            "services_batch_id": self.services_batch_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "warnings": list(self.warnings),
        }


class PhaseSequencer:
    """Drives sync runs through their phases.

    ``start`` opens the target's history entry and returns at once; the run
    itself continues as a background task. Services never start before the
    infra batch reaches a terminal state, and a failed or partially failed
    infra batch still lets services run. A run is marked failed only when
    it cannot get going at all (unreachable target, rejected credentials)
    or breaks unexpectedly.
    """

    def __init__(
        self,
        coordinator: BatchCoordinator,
        recorder: SyncHistoryRecorder,
        session_factory,
        client_factory: Callable = AxlClient,
        infra_entity_types: Sequence[str] = INFRA_ENTITY_TYPES,
        service_entity_types: Sequence[str] = SERVICE_ENTITY_TYPES,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_wait_min: Optional[float] = None,
        retry_wait_max: Optional[float] = None,
        item_concurrency: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ):
        """Initialize sequencer.

        Args:
            coordinator: Batch coordinator shared by all runs.
            recorder: Sync history recorder.
            session_factory: Callable returning a new database session.
            client_factory: Callable building an async-context AXL client for a SyncTarget.
            infra_entity_types: Entity types of the first phase.
            service_entity_types: Entity types of the second phase.
            poll_interval: Seconds between batch state checks.
            max_attempts: Attempts per AXL fetch for transient errors.
            retry_wait_min: Minimum backoff in seconds.
            retry_wait_max: Maximum backoff in seconds.
            item_concurrency: Concurrent get calls across the services phase of one run.
            chunk_size: Rows per upsert statement.
        """
        self.coordinator = coordinator
        self.recorder = recorder
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.infra_entity_types = tuple(infra_entity_types)
        self.service_entity_types = tuple(service_entity_types)
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.item_concurrency = item_concurrency
        self.chunk_size = chunk_size
        self._runs: Dict[str, SyncRun] = {}
        self._latest_by_target: Dict[Tuple[str, int], str] = {}

    async def start(self, target: SyncTarget) -> SyncRun:
        """Open the target's history entry and launch the run.

        Raises:
            SyncInProgressError: If the target already has an open run; no
                history entry is created.
        """
        handle = self.recorder.open(target)
        run = SyncRun(id=uuid.uuid4().hex, target=target, history_id=handle.history_id)
        self._runs[run.id] = run
        self._latest_by_target[target.key] = run.id
        self._prune()

        logger.info(f"Starting sync run {run.id} for {target.label}")
        run.task = asyncio.create_task(self._drive(run, handle))
        return run

    async def _drive(self, run: SyncRun, handle: HistoryHandle) -> None:
        try:
            async with self.client_factory(run.target) as client:
                executor = SyncUnitExecutor(
                    client,
                    self.session_factory,
                    max_attempts=self.max_attempts,
                    retry_wait_min=self.retry_wait_min,
                    retry_wait_max=self.retry_wait_max,
                    chunk_size=self.chunk_size,
                )

                try:
                    await self._preflight(run, executor, client)
                except AxlError as e:
                    self._fail(run, handle, f"Target unreachable: {type(e).__name__}: {e}")
                    return

                infra = await self._run_infra(run, executor)
                run.warnings.extend(infra.warnings("infra"))

                run.advance(SyncPhase.SERVICES_RUNNING)
                runner = ServiceFanOutRunner(
                    client,
                    executor,
                    self.coordinator,
                    item_concurrency=self.item_concurrency,
                    poll_interval=self.poll_interval,
                )
                services_handle = runner.dispatch(run.target, self.service_entity_types)
                run.services_batch_id = services_handle.id
                services = await runner.collect(services_handle)
                run.warnings.extend(services.warnings("services"))

            self.recorder.close(handle, SyncStatus.COMPLETED, warnings=run.warnings)
            run.advance(SyncPhase.DONE)
            logger.info(
                f"Sync run {run.id} for {run.target.label} completed: "
                f"{infra.records_written + services.records_written} records, {len(run.warnings)} warnings"
            )
        except asyncio.CancelledError:
            for batch_id in (run.infra_batch_id, run.services_batch_id):
                if batch_id:
                    self.coordinator.cancel(batch_id)
            self._fail(run, handle, "Sync run was cancelled")
            raise
        except Exception as e:
            logger.exception(f"Sync run {run.id} for {run.target.label} failed unexpectedly")
            self._fail(run, handle, str(e) or type(e).__name__)

    async def _preflight(self, run: SyncRun, executor: SyncUnitExecutor, client) -> None:
        async for attempt in executor.retrying():
            with attempt:
                version = await client.get_version()
        logger.info(f"{run.target.label} is reachable, UCM version {version}")

    async def _run_infra(self, run: SyncRun, executor: SyncUnitExecutor) -> PhaseResult:
        units = [SyncUnit(entity_type, run.target) for entity_type in self.infra_entity_types]
        batch = self.coordinator.dispatch(units, f"Infra sync: {run.target.name}", executor.execute)
        run.infra_batch_id = batch.id
        run.advance(SyncPhase.AWAITING_INFRA_COMPLETION)

        status = await self.coordinator.wait(batch.id, self.poll_interval)
        if status.state == BatchState.FAILED:
            logger.warning(f"Every infra unit failed for {run.target.label}; continuing with services")
        elif status.state == BatchState.PARTIALLY_FAILED:
            logger.warning(f"{status.failed} of {status.total} infra units failed for {run.target.label}")
        return PhaseResult(batch_id=batch.id, state=status.state, results=self.coordinator.results(batch.id))

    def _fail(self, run: SyncRun, handle: HistoryHandle, error: str) -> None:
        logger.error(f"Sync run {run.id} for {run.target.label} failed: {error}")
        run.error = error
        if not run.phase.is_terminal:
            run.advance(SyncPhase.FAILED)
        self.recorder.close(handle, SyncStatus.FAILED, error=error, warnings=run.warnings)

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        return self._runs.get(run_id)

    def run_for_history(self, history_id: int) -> Optional[SyncRun]:
        return next((run for run in self._runs.values() if run.history_id == history_id), None)

    def cancel(self, history_id: int) -> Optional[SyncRun]:
        """Cancel the live run behind a history entry, if this process owns one.

        The run stops at its next await: its unfinished units are cancelled,
        no later phase is dispatched and its entry is closed as failed.
        """
        run = self.run_for_history(history_id)
        if run is None or run.phase.is_terminal or run.task is None or run.task.done():
            return None
        logger.warning(f"Cancelling sync run {run.id} for {run.target.label}")
        run.task.cancel()
        return run

    def _prune(self) -> None:
        """Forget finished runs that are no longer the latest for their target, with their batches."""
        stale = [
            run for run in self._runs.values()
            if run.phase.is_terminal and self._latest_by_target.get(run.target.key) != run.id
        ]
        for run in stale:
            del self._runs[run.id]
            for batch_id in (run.infra_batch_id, run.services_batch_id):
                if batch_id:
                    self.coordinator.forget(batch_id)
        if stale:
            logger.debug(f"Pruned {len(stale)} finished sync runs")

    def latest_run(self, target_type: str, target_id: int) -> Optional[SyncRun]:
        run_id = self._latest_by_target.get((target_type, target_id))
        return self._runs.get(run_id) if run_id else None

    async def wait(self, run: SyncRun) -> SyncRun:
        """Block until a run's background task has finished."""
        if run.task is not None:
            await run.task
        return run
