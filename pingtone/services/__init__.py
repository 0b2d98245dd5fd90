"""Services package."""

from pingtone.services.encryption_service import EncryptionService
from pingtone.services.cluster_service import ClusterService
from pingtone.services.sync_service import SyncService

__all__ = ["EncryptionService", "ClusterService", "SyncService"]
