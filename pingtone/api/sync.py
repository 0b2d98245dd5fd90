"""Sync API endpoints."""

import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from pingtone.database.database import get_db
from pingtone.services.phase_sequencer import SyncRun
from pingtone.services.sync_service import (
    SyncInProgressError,
    SyncService,
    SyncTargetError,
    SyncTargetNotFoundError,
    get_sync_service,
)
from pingtone.services.sync_target import SyncTargetType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncStartResponse(BaseModel):
    """Accepted sync run."""

    run_id: str
    history_id: int
    target_type: str
    target_id: int
    phase: str
    started_at: str


class SyncAllResponse(BaseModel):
    """Result of starting a run for every cluster."""

    started: List[SyncStartResponse]
    busy: List[int]
    failed: Dict[int, str]


class SyncStatusResponse(BaseModel):
    """Current state of a target's sync."""

    target_type: str
    target_id: int
    phase: Optional[str] = None
    outcome: str
    run: Optional[Dict[str, Any]] = None
    infra_batch: Optional[Dict[str, Any]] = None
    services_batch: Optional[Dict[str, Any]] = None
    last_history: Optional[Dict[str, Any]] = None


class SyncHistoryResponse(BaseModel):
    """Sync history entry."""

    id: int
    syncable_type: str
    syncable_id: int
    sync_start_time: str
    sync_end_time: Optional[str] = None
    status: str
    status_label: str
    status_color: str
    error: Optional[str] = None
    warnings: List[str] = []
    duration: Optional[int] = None
    formatted_duration: Optional[str] = None
    outcome: str


class MarkFailedRequest(BaseModel):
    """Out-of-band failure request."""

    error: Optional[str] = None


def _run_response(run: SyncRun) -> SyncStartResponse:
    return SyncStartResponse(
        run_id=run.id,
        history_id=run.history_id,
        target_type=run.target.target_type.value,
        target_id=run.target.target_id,
        phase=run.phase.value,
        started_at=run.started_at.isoformat(),
    )


@router.post("/all", response_model=SyncAllResponse, status_code=202)
async def sync_all_clusters(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Start a run for every cluster. Busy clusters are reported, not treated as errors."""
    try:
        result = await sync_service.sync_all(db)
        return SyncAllResponse(
            started=[_run_response(run) for run in result["started"]],
            busy=result["busy"],
            failed=result["failed"],
        )
    except Exception as e:
        logger.error(f"Failed to start sync for all clusters: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start sync: {str(e)}")


@router.post("/{target_type}/{target_id}", response_model=SyncStartResponse, status_code=202)
async def start_sync(
    target_type: SyncTargetType,
    target_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Start a two-phase sync of a cluster or node.

    Returns as soon as the run is launched; poll the status endpoint to
    follow it.
    """
    try:
        run = await sync_service.start_sync(db, target_type, target_id)
        return _run_response(run)
    except SyncTargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SyncTargetError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start sync of {target_type.value} {target_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start sync: {str(e)}")


@router.get("/{target_type}/{target_id}/status", response_model=SyncStatusResponse)
async def get_sync_status(
    target_type: SyncTargetType,
    target_id: int,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Current phase, batch states and latest history entry of a target."""
    return SyncStatusResponse(**sync_service.get_status(target_type, target_id))


@router.get("/history", response_model=List[SyncHistoryResponse])
async def get_sync_history(
    target_type: Optional[SyncTargetType] = None,
    target_id: Optional[int] = None,
    limit: int = 50,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Sync history entries, newest first."""
    entries = sync_service.get_sync_history(target_type, target_id, limit)
    return [SyncHistoryResponse(**entry.to_dict()) for entry in entries]


@router.get("/history/{history_id}", response_model=SyncHistoryResponse)
async def get_sync_record(
    history_id: int,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Get a sync history entry by ID."""
    entry = sync_service.get_sync_record(history_id)
    if not entry:
        raise HTTPException(status_code=404, detail=f"Sync history {history_id} not found")
    return SyncHistoryResponse(**entry.to_dict())


@router.post("/history/{history_id}/fail", response_model=SyncHistoryResponse)
async def mark_sync_failed(
    history_id: int,
    request: MarkFailedRequest = MarkFailedRequest(),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Mark an open sync as failed so the target can be synced again."""
    try:
        if request.error:
            entry = sync_service.mark_failed(history_id, request.error)
        else:
            entry = sync_service.mark_failed(history_id)
        return SyncHistoryResponse(**entry.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
