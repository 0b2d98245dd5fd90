"""List+get fan-out for the services phase."""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pingtone.config import settings
from pingtone.services.axl_client import AxlAuthError, AxlError
from pingtone.services.batch_coordinator import BatchCoordinator, BatchHandle, BatchState
from pingtone.services.entity_registry import SERVICE_ENTITY_TYPES, EntitySpec, get_entity_spec, ref_name
from pingtone.services.sync_target import SyncTarget
from pingtone.services.sync_unit_executor import SyncUnit, SyncUnitExecutor, UnitResult

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """How one phase's batch ended, with every unit's result."""

    batch_id: str
    state: BatchState
    results: List[UnitResult] = field(default_factory=list)

    @property
    def records_written(self) -> int:
        return sum(result.records_written for result in self.results)

    def warnings(self, phase: str) -> List[str]:
        """One line per failed unit and per unit that skipped records."""
        lines = []
        for result in self.results:
            if result.error:
                lines.append(f"{phase}: {result.entity_type} failed: {result.error}")
            elif result.item_errors:
                lines.append(f"{phase}: {result.entity_type} skipped {len(result.item_errors)} records")
        return lines


class ServiceFanOutRunner:
    """Dispatches the services entity types as one batch.

    Each unit pages through the entity type's list call and, for every
    listed record, fetches full detail with a get call. Gets run
    concurrently, and ``item_concurrency`` caps the gets in flight across
    every unit of the batch, since all units share one client. A record
    whose get fails is skipped and reported; an authentication failure
    aborts the whole unit.
    """

    def __init__(
        self,
        client,
        executor: SyncUnitExecutor,
        coordinator: BatchCoordinator,
        item_concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.client = client
        self.executor = executor
        self.coordinator = coordinator
        self.item_concurrency = item_concurrency or settings.sync_item_concurrency
        self.poll_interval = poll_interval
        self._get_slots = asyncio.Semaphore(self.item_concurrency)

    def dispatch(self, target: SyncTarget, entity_types: Sequence[str] = SERVICE_ENTITY_TYPES) -> BatchHandle:
        units = [SyncUnit(entity_type, target) for entity_type in entity_types]
        return self.coordinator.dispatch(
            units,
            f"Services sync: {target.name}",
            partial(self.executor.execute, fetcher=self.fetch_details),
        )

    async def collect(self, handle: BatchHandle) -> PhaseResult:
        status = await self.coordinator.wait(handle.id, self.poll_interval)
        return PhaseResult(batch_id=handle.id, state=status.state, results=self.coordinator.results(handle.id))

    async def run(self, target: SyncTarget, entity_types: Sequence[str] = SERVICE_ENTITY_TYPES) -> PhaseResult:
        """Sync the given service entity types and wait for all of them."""
        return await self.collect(self.dispatch(target, entity_types))

    async def fetch_details(self, unit: SyncUnit) -> Tuple[List[Dict[str, Any]], List[str]]:
        """Fetcher for the executor: every page listed, every record fetched in full."""
        spec = get_entity_spec(unit.entity_type)
        if not spec.is_fan_out:
            return await self.executor.list_records(unit)

        records: List[Dict[str, Any]] = []
        item_errors: List[str] = []
        token = None
        page_number = 0
        while True:
            page, token = await self.client.list(unit.entity_type, token)
            page_number += 1
            details, errors = await self._get_page(unit, spec, page)
            records.extend(details)
            item_errors.extend(errors)
            logger.debug(f"{unit.label}: page {page_number} listed {len(page)}, fetched {len(details)}")
            if token is None:
                return records, item_errors

    async def _get_page(self, unit: SyncUnit, spec: EntitySpec, page: List[Dict[str, Any]]):
        errors = []
        tasks = []
        for item in page:
            key = ref_name(item.get(spec.get_key))
            if not key:
                errors.append(f"listed {spec.response_tag} without {spec.get_key}")
                continue
            tasks.append(asyncio.create_task(self._get_one(unit, key)))

        try:
            outcomes = await asyncio.gather(*tasks)
        except AxlAuthError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        details = []
        for record, error in outcomes:
            if error:
                errors.append(error)
            else:
                details.append(record)
        return details, errors

    async def _get_one(self, unit: SyncUnit, key: str):
        async with self._get_slots:
            try:
                async for attempt in self.executor.retrying():
                    with attempt:
                        record = await self.client.get(unit.entity_type, key)
            except AxlAuthError:
                raise
            except AxlError as e:
                logger.warning(f"{unit.label}: skipping {key}: {e}")
                return None, f"{key}: {e}"
        return record, None
