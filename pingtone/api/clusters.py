"""UCM cluster API endpoints."""

import logging
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from pingtone.database.database import get_db
from pingtone.services.cluster_service import ClusterService, cluster_to_dict
from pingtone.services.encryption_service import EncryptionService
from pingtone.services.sync_history_recorder import SyncInProgressError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/clusters", tags=["clusters"])


class ClusterConnection(BaseModel):
    """Publisher connection details."""

    hostname: str
    username: str
    password: str
    schema_version: str


class ClusterCreate(ClusterConnection):
    """Cluster creation request."""

    name: str
    ssh_username: Optional[str] = None
    ssh_password: Optional[str] = None


class NodeResponse(BaseModel):
    """Cluster node response."""

    id: int
    name: str
    hostname: str
    node_role: Optional[str] = None


class ClusterResponse(BaseModel):
    """Cluster response."""

    id: int
    name: str
    hostname: str
    username: str
    schema_version: str
    version: Optional[str] = None
    has_ssh_credentials: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    nodes: List[NodeResponse] = []


class DiscoveryResponse(BaseModel):
    """Cluster discovery response."""

    version: str
    nodes: List[Dict[str, Optional[str]]]
    publisher: Dict[str, Optional[str]]


class DeleteClusterResponse(BaseModel):
    """Cluster deletion response."""

    cluster_id: int
    deleted: Dict[str, int]


def get_cluster_service() -> ClusterService:
    """Get cluster service instance."""
    return ClusterService(EncryptionService())


def _to_response(cluster) -> ClusterResponse:
    data = cluster_to_dict(cluster)
    for field in ("created_at", "updated_at", "last_sync_at"):
        data[field] = data[field].isoformat() if data[field] else None
    return ClusterResponse(**data)


@router.post("/discover", response_model=DiscoveryResponse)
async def discover_cluster(
    connection: ClusterConnection,
    cluster_service: ClusterService = Depends(get_cluster_service),
):
    """Connect to a publisher and list the cluster's nodes without storing anything."""
    try:
        discovery = await cluster_service.discover_cluster(
            connection.hostname,
            connection.username,
            connection.password,
            connection.schema_version,
        )
        return DiscoveryResponse(**discovery)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("", response_model=ClusterResponse, status_code=201)
async def create_cluster(
    cluster_data: ClusterCreate,
    db: Session = Depends(get_db),
    cluster_service: ClusterService = Depends(get_cluster_service),
):
    """Discover a cluster through its publisher and store it with its nodes."""
    try:
        cluster = await cluster_service.add_cluster(
            db,
            name=cluster_data.name,
            hostname=cluster_data.hostname,
            username=cluster_data.username,
            password=cluster_data.password,
            schema_version=cluster_data.schema_version,
            ssh_username=cluster_data.ssh_username,
            ssh_password=cluster_data.ssh_password,
        )
        return _to_response(cluster)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create cluster: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create cluster: {str(e)}")


@router.get("", response_model=List[ClusterResponse])
async def list_clusters(
    db: Session = Depends(get_db),
    cluster_service: ClusterService = Depends(get_cluster_service),
):
    """List all clusters with their nodes."""
    return [_to_response(cluster) for cluster in cluster_service.list_clusters(db)]


@router.get("/{cluster_id}", response_model=ClusterResponse)
async def get_cluster(
    cluster_id: int,
    db: Session = Depends(get_db),
    cluster_service: ClusterService = Depends(get_cluster_service),
):
    """Get a cluster by ID."""
    cluster = cluster_service.get_cluster(db, cluster_id)
    if not cluster:
        raise HTTPException(status_code=404, detail=f"Cluster {cluster_id} not found")
    return _to_response(cluster)


@router.delete("/{cluster_id}", response_model=DeleteClusterResponse)
async def delete_cluster(
    cluster_id: int,
    db: Session = Depends(get_db),
    cluster_service: ClusterService = Depends(get_cluster_service),
):
    """Delete a cluster and every record synced for it.

    Refused while the cluster or any of its nodes is syncing.
    """
    try:
        deleted = cluster_service.delete_cluster(db, cluster_id)
        return DeleteClusterResponse(cluster_id=cluster_id, deleted=deleted)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to delete cluster {cluster_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete cluster: {str(e)}")
