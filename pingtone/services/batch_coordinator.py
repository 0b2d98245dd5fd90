"""Dispatch of sync units as named batches on a bounded worker pool."""

import asyncio
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from pingtone.config import settings
from pingtone.services.sync_unit_executor import SyncUnit, UnitResult

logger = logging.getLogger(__name__)

UnitHandler = Callable[[SyncUnit], Awaitable[UnitResult]]


class BatchState(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not BatchState.PENDING


def aggregate_state(total: int, outcomes: Iterable[bool]) -> BatchState:
    """Derive a batch's state from the success flags of its finished units.

    An empty batch counts as succeeded.
    """
    outcomes = list(outcomes)
    if len(outcomes) < total:
        return BatchState.PENDING
    failed = outcomes.count(False)
    if failed == 0:
        return BatchState.SUCCEEDED
    if failed == total:
        return BatchState.FAILED
    return BatchState.PARTIALLY_FAILED


@dataclass(frozen=True)
class BatchHandle:
    id: str
    name: str
    total: int


@dataclass(frozen=True)
class BatchStatus:
    """Point-in-time view of a batch."""

    id: str
    name: str
    state: BatchState
    total: int
    succeeded: int
    failed: int
    created_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def pending(self) -> int:
        return self.total - self.succeeded - self.failed

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class _BatchLedger:
    name: str
    unit_ids: List[str]
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    results: Dict[str, UnitResult] = field(default_factory=dict)
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.unit_ids)


class BatchCoordinator:
    """Runs groups of units concurrently and tracks how each group ends.

    Units of all batches share one semaphore, so at most ``concurrency``
    units run at a time. A unit's failure is recorded and never cancels its
    siblings. Batch state is always computed from the ledger on demand.
    """

    def __init__(self, concurrency: Optional[int] = None):
        self.concurrency = concurrency or settings.sync_concurrency
        self._semaphore = asyncio.Semaphore(self.concurrency)
        # Guards _batches; updated from every unit task
        self._lock = threading.Lock()
        self._batches: Dict[str, _BatchLedger] = {}

    def dispatch(self, units: Sequence[SyncUnit], name: str, handler: UnitHandler) -> BatchHandle:
        """Schedule every unit and return immediately.

        Must be called from a running event loop.

        Args:
            units: Units to run.
            name: Human readable batch name.
            handler: Coroutine function executing one unit.

        Returns:
            Handle identifying the batch for status() and wait().
        """
        batch_id = uuid.uuid4().hex
        unit_ids = [f"{index}:{unit.entity_type}" for index, unit in enumerate(units)]
        ledger = _BatchLedger(name=name, unit_ids=unit_ids)

        with self._lock:
            self._batches[batch_id] = ledger
            if not units:
                ledger.finished_at = ledger.created_at

        logger.info(f"Dispatching batch '{name}' ({batch_id}) with {len(units)} units")
        for unit_id, unit in zip(unit_ids, units):
            ledger.tasks.append(asyncio.create_task(self._run_unit(batch_id, unit_id, unit, handler)))

        return BatchHandle(id=batch_id, name=name, total=len(units))

    async def _run_unit(self, batch_id: str, unit_id: str, unit: SyncUnit, handler: UnitHandler) -> None:
        try:
            async with self._semaphore:
                try:
                    result = await handler(unit)
                except Exception as e:
                    logger.exception(f"Handler for {unit.label} raised")
                    result = UnitResult(entity_type=unit.entity_type, error=f"Unexpected error: {e}")
        except asyncio.CancelledError:
            self._record(batch_id, unit_id, UnitResult(entity_type=unit.entity_type, error="Cancelled"))
            raise
        self._record(batch_id, unit_id, result)

    def _record(self, batch_id: str, unit_id: str, result: UnitResult) -> None:
        with self._lock:
            ledger = self._batches.get(batch_id)
            if ledger is None or unit_id in ledger.results:
                return
            ledger.results[unit_id] = result
            finished = len(ledger.results) == ledger.total
            if finished:
                ledger.finished_at = datetime.utcnow()
                state = aggregate_state(ledger.total, (r.succeeded for r in ledger.results.values()))

        if finished:
            logger.info(f"Batch '{ledger.name}' ({batch_id}) finished: {state.value}")

    def status(self, batch_id: str) -> BatchStatus:
        """Current state of a batch.

        Raises:
            ValueError: If the batch id is unknown.
        """
        with self._lock:
            ledger = self._batches.get(batch_id)
            if ledger is None:
                raise ValueError(f"Unknown batch {batch_id}")
            outcomes = [r.succeeded for r in ledger.results.values()]
            return BatchStatus(
                id=batch_id,
                name=ledger.name,
                state=aggregate_state(ledger.total, outcomes),
                total=ledger.total,
                succeeded=outcomes.count(True),
                failed=outcomes.count(False),
                created_at=ledger.created_at,
                finished_at=ledger.finished_at,
            )

    def results(self, batch_id: str) -> List[UnitResult]:
        """Results of the batch's finished units, in dispatch order."""
        with self._lock:
            ledger = self._batches.get(batch_id)
            if ledger is None:
                raise ValueError(f"Unknown batch {batch_id}")
            return [ledger.results[u] for u in ledger.unit_ids if u in ledger.results]

    async def wait(self, batch_id: str, poll_interval: Optional[float] = None) -> BatchStatus:
        """Re-check the batch until it reaches a terminal state."""
        poll_interval = settings.sync_poll_interval_seconds if poll_interval is None else poll_interval
        while True:
            status = self.status(batch_id)
            if status.state.is_terminal:
                return status
            logger.debug(f"Batch {batch_id}: {status.pending} of {status.total} units pending")
            await asyncio.sleep(poll_interval)

    def cancel(self, batch_id: str) -> int:
        """Cancel the batch's unfinished units and record each as failed.

        Returns:
            Number of units cancelled.
        """
        with self._lock:
            ledger = self._batches.get(batch_id)
            if ledger is None:
                return 0
            pending = [u for u in ledger.unit_ids if u not in ledger.results]
            tasks = [task for task in ledger.tasks if not task.done()]

        for unit_id in pending:
            entity_type = unit_id.split(":", 1)[1]
            self._record(batch_id, unit_id, UnitResult(entity_type=entity_type, error="Cancelled"))
        for task in tasks:
            task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} units of batch '{ledger.name}' ({batch_id})")
        return len(pending)

    def forget(self, batch_id: str) -> bool:
        """Drop a batch's ledger. Results of units still running are discarded."""
        with self._lock:
            return self._batches.pop(batch_id, None) is not None
