"""Main FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from pingtone import __version__
from pingtone.api.clusters import router as clusters_router
from pingtone.api.sync import router as sync_router
from pingtone.config import settings
from pingtone.database.database import get_db, init_db
from pingtone.models import Line, Phone, SyncHistory, UcmCluster, UcmNode, UcmUser, SyncStatus
from pingtone.services.encryption_service import EncryptionService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="PingTone",
    description="Cisco UCM configuration sync service",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(clusters_router)
app.include_router(sync_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    encryption: str
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    clusters_count: int
    nodes_count: int
    phones_count: int
    lines_count: int
    users_count: int
    syncs_in_progress: int
    sync_histories_count: int
    last_sync_status: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database and validate encryption on startup."""
    # Exits the process when ENCRYPTION_KEY is missing or malformed
    EncryptionService()
    init_db()


@app.get("/")
async def root():
    return {"message": "PingTone API", "version": __version__}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Report database reachability and whether stored UCM passwords can be decrypted."""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check could not reach the database: {e}")
        return HealthResponse(status="unhealthy", database="disconnected", encryption="unknown", message=str(e))

    encryption_service = EncryptionService()
    sample = "pingtone-health"
    if encryption_service.decrypt(encryption_service.encrypt(sample)) != sample:
        return HealthResponse(
            status="unhealthy",
            database="connected",
            encryption="invalid",
            message="Credential encryption round trip failed",
        )
    return HealthResponse(status="healthy", database="connected", encryption="valid")


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(db: Session = Depends(get_db)):
    """Get counts of clusters, synced records and sync runs."""
    try:
        last_sync = db.query(SyncHistory).order_by(SyncHistory.sync_start_time.desc()).first()
        return StatsResponse(
            clusters_count=db.query(UcmCluster).count(),
            nodes_count=db.query(UcmNode).count(),
            phones_count=db.query(Phone).count(),
            lines_count=db.query(Line).count(),
            users_count=db.query(UcmUser).count(),
            syncs_in_progress=db.query(SyncHistory).filter(SyncHistory.status == SyncStatus.SYNCING.value).count(),
            sync_histories_count=db.query(SyncHistory).count(),
            last_sync_status=last_sync.status if last_sync else None,
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")
