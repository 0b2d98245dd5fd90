"""Execution of a single sync unit: one entity type against one target."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pingtone.config import settings
from pingtone.models import DeviceLine
from pingtone.services.axl_client import AxlError, AxlTransientError
from pingtone.services.bulk_upsert import bulk_upsert
from pingtone.services.entity_registry import (
    DEVICE_LINE_UNIQUE_BY,
    extract_links,
    get_entity_spec,
    normalize_records,
)
from pingtone.services.sync_target import SyncTarget

logger = logging.getLogger(__name__)

Records = List[Dict[str, Any]]
Fetcher = Callable[["SyncUnit"], Awaitable[Tuple[Records, List[str]]]]


def build_retrying(
    max_attempts: Optional[int] = None,
    wait_min: Optional[float] = None,
    wait_max: Optional[float] = None,
) -> AsyncRetrying:
    """Retry policy for AXL calls: transient errors only, exponential backoff."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts or settings.sync_unit_max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=settings.sync_retry_wait_min if wait_min is None else wait_min,
            max=settings.sync_retry_wait_max if wait_max is None else wait_max,
        ),
        retry=retry_if_exception_type(AxlTransientError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


@dataclass(frozen=True)
class SyncUnit:
    """Smallest schedulable piece of work."""

    entity_type: str
    target: SyncTarget

    @property
    def label(self) -> str:
        return f"{self.entity_type}@{self.target.name}"


@dataclass
class UnitResult:
    """Outcome of one unit. ``error`` is None when the unit succeeded."""

    entity_type: str
    records_written: int = 0
    error: Optional[str] = None
    attempts: int = 0
    item_errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "records_written": self.records_written,
            "error": self.error,
            "attempts": self.attempts,
            "item_errors": list(self.item_errors),
        }


class SyncUnitExecutor:
    """Fetches one entity type from AXL and upserts it into storage.

    The fetch is retried for transient AXL errors; storage happens once,
    after a successful fetch, so retries never write twice. ``execute``
    reports every failure through ``UnitResult.error`` and never raises.
    """

    def __init__(
        self,
        client,
        session_factory,
        max_attempts: Optional[int] = None,
        retry_wait_min: Optional[float] = None,
        retry_wait_max: Optional[float] = None,
        chunk_size: Optional[int] = None,
    ):
        """Initialize executor.

        Args:
            client: Open AXL client for the run's target.
            session_factory: Callable returning a new database session.
            max_attempts: Fetch attempts per unit (defaults to settings.sync_unit_max_attempts).
            retry_wait_min: Minimum backoff in seconds.
            retry_wait_max: Maximum backoff in seconds.
            chunk_size: Rows per upsert statement.
        """
        self.client = client
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.sync_unit_max_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.chunk_size = chunk_size

    def retrying(self) -> AsyncRetrying:
        return build_retrying(self.max_attempts, self.retry_wait_min, self.retry_wait_max)

    async def list_records(self, unit: SyncUnit) -> Tuple[Records, List[str]]:
        """Default fetcher: every page of the entity type's list call."""
        return await self.client.list_all(unit.entity_type), []

    async def execute(self, unit: SyncUnit, fetcher: Optional[Fetcher] = None) -> UnitResult:
        """Run one unit to completion.

        Args:
            unit: Entity type and target to sync.
            fetcher: Coroutine function producing ``(records, item_errors)``;
                defaults to a plain list of every record.

        Returns:
            UnitResult describing what was written or why the unit failed.
        """
        fetcher = fetcher or self.list_records
        result = UnitResult(entity_type=unit.entity_type)
        logger.info(f"Starting sync unit {unit.label}")

        try:
            async for attempt in self.retrying():
                with attempt:
                    result.attempts += 1
                    records, item_errors = await fetcher(unit)
        except AxlError as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.error(f"Sync unit {unit.label} failed after {result.attempts} attempt(s): {e}")
            return result
        except Exception as e:
            result.error = f"Unexpected error: {e}"
            logger.exception(f"Sync unit {unit.label} failed with an unexpected error")
            return result

        result.item_errors = list(item_errors)
        try:
            result.records_written = self._store(unit, records)
        except Exception as e:
            result.error = f"Storage error: {e}"
            logger.error(f"Sync unit {unit.label} could not store {len(records)} records: {e}")
            return result

        if result.item_errors:
            logger.warning(f"Sync unit {unit.label} skipped {len(result.item_errors)} records")
        logger.info(f"Sync unit {unit.label} wrote {result.records_written} records")
        return result

    def _store(self, unit: SyncUnit, records: Records) -> int:
        spec = get_entity_spec(unit.entity_type)
        cluster_id = unit.target.cluster_id
        rows = normalize_records(spec, records, cluster_id)

        db = self.session_factory()
        try:
            written = bulk_upsert(db, spec.model, rows, spec.unique_by, self.chunk_size)
            links = extract_links(spec, records, cluster_id)
            if links:
                bulk_upsert(db, DeviceLine, links, DEVICE_LINE_UNIQUE_BY, self.chunk_size)
        finally:
            db.close()
        return written
