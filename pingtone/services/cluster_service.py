"""Cluster service for registering UCM clusters and resolving sync targets."""

import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pingtone.models import SyncHistory, UcmCluster, UcmNode
from pingtone.services.axl_client import AxlClient, AxlError
from pingtone.services.encryption_service import EncryptionService, InvalidToken
from pingtone.services.entity_registry import CLUSTER_SCOPED_MODELS
from pingtone.services.sync_history_recorder import SyncInProgressError
from pingtone.services.sync_target import (
    SyncTarget,
    SyncTargetError,
    SyncTargetNotFoundError,
    SyncTargetType,
)

logger = logging.getLogger(__name__)


def cluster_to_dict(cluster: UcmCluster) -> dict:
    """Serializable view of a cluster and its nodes, without credentials."""
    return {
        "id": cluster.id,
        "name": cluster.name,
        "hostname": cluster.hostname,
        "username": cluster.username,
        "schema_version": cluster.schema_version,
        "version": cluster.version,
        "has_ssh_credentials": bool(cluster.ssh_username and cluster.ssh_password_encrypted),
        "created_at": cluster.created_at,
        "updated_at": cluster.updated_at,
        "last_sync_at": cluster.last_sync_at,
        "nodes": [
            {
                "id": node.id,
                "name": node.name,
                "hostname": node.hostname,
                "node_role": node.node_role,
            }
            for node in cluster.nodes
        ],
    }


class ClusterService:
    """Service for managing UCM clusters and their nodes."""

    def __init__(self, encryption_service: EncryptionService, client_factory: Callable = AxlClient):
        """Initialize cluster service.

        Args:
            encryption_service: Service for encrypting/decrypting stored passwords.
            client_factory: Callable building an async-context AXL client for a SyncTarget.
        """
        self.encryption_service = encryption_service
        self.client_factory = client_factory

    async def discover_cluster(
        self,
        hostname: str,
        username: str,
        password: str,
        schema_version: str,
    ) -> dict:
        """Connect to a publisher and list the cluster's servers.

        Args:
            hostname: Publisher hostname or address.
            username: AXL user.
            password: AXL password.
            schema_version: AXL schema version, e.g. "14.0".

        Returns:
            Dict with the detected ``version``, the raw ``nodes`` rows and the ``publisher`` row.

        Raises:
            ValueError: If the publisher cannot be reached or reports no publisher node.
        """
        candidate = SyncTarget(
            target_type=SyncTargetType.CLUSTER,
            target_id=0,
            cluster_id=0,
            name="discovery",
            hostname=hostname,
            username=username,
            password=password,
            schema_version=schema_version,
        )
        logger.info(f"Starting cluster discovery against {hostname} as {username} (schema {schema_version})")

        try:
            async with self.client_factory(candidate) as client:
                version = await client.get_version()
                nodes = await client.discover_nodes()
        except AxlError as e:
            logger.error(f"Cluster discovery against {hostname} failed: {e}")
            raise ValueError(f"Failed to connect to UCM API at {hostname}: {e}") from e

        if not nodes:
            raise ValueError("No cluster nodes found")

        publisher = next((node for node in nodes if node.get("type") == "Publisher"), None)
        if publisher is None:
            raise ValueError("No publisher node found in cluster")

        logger.info(f"Discovered {len(nodes)} nodes on {hostname}, version {version}")
        return {"version": version, "nodes": nodes, "publisher": publisher}

    async def add_cluster(
        self,
        db: Session,
        name: str,
        hostname: str,
        username: str,
        password: str,
        schema_version: str,
        ssh_username: Optional[str] = None,
        ssh_password: Optional[str] = None,
    ) -> UcmCluster:
        """Discover a cluster and store it with its nodes.

        The publisher node keeps the hostname given here; subscribers are
        reached by the name UCM reports for them.

        Raises:
            ValueError: If discovery fails or the name already exists.
        """
        discovery = await self.discover_cluster(hostname, username, password, schema_version)
        publisher_name = discovery["publisher"].get("processnode")

        cluster = UcmCluster(
            name=name,
            hostname=hostname,
            username=username,
            password_encrypted=self.encryption_service.encrypt(password),
            ssh_username=ssh_username,
            ssh_password_encrypted=self.encryption_service.encrypt_optional(ssh_password),
            schema_version=schema_version,
            version=discovery["version"],
        )
        for row in discovery["nodes"]:
            node_name = row.get("processnode")
            is_publisher = node_name == publisher_name
            cluster.nodes.append(UcmNode(
                name=node_name,
                hostname=hostname if is_publisher else node_name,
                node_role="publisher" if is_publisher else "subscriber",
            ))

        try:
            db.add(cluster)
            db.commit()
            db.refresh(cluster)
            logger.info(f"Cluster '{name}' added with {len(cluster.nodes)} nodes")
            return cluster
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Failed to add cluster '{name}': {e}")
            raise ValueError(f"Cluster with name '{name}' already exists")

    def list_clusters(self, db: Session) -> List[UcmCluster]:
        return db.query(UcmCluster).order_by(UcmCluster.name).all()

    def get_cluster(self, db: Session, cluster_id: int) -> Optional[UcmCluster]:
        return db.query(UcmCluster).filter(UcmCluster.id == cluster_id).first()

    def get_node(self, db: Session, node_id: int) -> Optional[UcmNode]:
        return db.query(UcmNode).filter(UcmNode.id == node_id).first()

    def delete_cluster(self, db: Session, cluster_id: int) -> Dict[str, int]:
        """Delete a cluster with everything synced for it.

        Cluster-scoped tables are taken from the entity registry, then the
        sync histories of the cluster and its nodes, the nodes and the
        cluster itself are removed, all in one transaction.

        Args:
            db: Database session.
            cluster_id: Cluster ID.

        Returns:
            Rows deleted per table.

        Raises:
            ValueError: If the cluster does not exist.
            SyncInProgressError: If the cluster or one of its nodes is syncing.
        """
        cluster = self.get_cluster(db, cluster_id)
        if not cluster:
            raise ValueError(f"Cluster {cluster_id} not found")

        node_ids = [node.id for node in cluster.nodes]
        open_keys = [SyncHistory.lock_key(SyncTargetType.CLUSTER.value, cluster_id)]
        open_keys += [SyncHistory.lock_key(SyncTargetType.NODE.value, node_id) for node_id in node_ids]
        syncing = db.query(SyncHistory.open_lock).filter(SyncHistory.open_lock.in_(open_keys)).all()
        if syncing:
            busy = ", ".join(sorted(key for key, in syncing))
            raise SyncInProgressError(f"Cluster {cluster_id} has a sync in progress ({busy})")

        deleted: Dict[str, int] = {}
        try:
            for model in CLUSTER_SCOPED_MODELS:
                deleted[model.__tablename__] = (
                    db.query(model).filter(model.ucm_cluster_id == cluster_id).delete(synchronize_session=False)
                )

            histories = db.query(SyncHistory).filter(
                SyncHistory.syncable_type == SyncTargetType.CLUSTER.value,
                SyncHistory.syncable_id == cluster_id,
            ).delete(synchronize_session=False)
            if node_ids:
                histories += db.query(SyncHistory).filter(
                    SyncHistory.syncable_type == SyncTargetType.NODE.value,
                    SyncHistory.syncable_id.in_(node_ids),
                ).delete(synchronize_session=False)
            deleted[SyncHistory.__tablename__] = histories

            db.delete(cluster)
            deleted[UcmNode.__tablename__] = len(node_ids)
            deleted[UcmCluster.__tablename__] = 1
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to delete cluster {cluster_id}: {e}")
            raise

        logger.info(f"Cluster {cluster_id} deleted ({sum(deleted.values())} rows)")
        return deleted

    def _decrypt(self, ciphertext: Optional[str], what: str) -> Optional[str]:
        try:
            return self.encryption_service.decrypt_optional(ciphertext)
        except InvalidToken:
            logger.error(f"Failed to decrypt {what}")
            raise SyncTargetError(f"Failed to decrypt {what}")

    def snapshot_target(self, db: Session, target_type: SyncTargetType, target_id: int) -> SyncTarget:
        """Resolve a cluster or node into an immutable SyncTarget.

        A node without its own credentials uses its cluster's. Records
        synced through a node target are scoped to the owning cluster.

        Raises:
            SyncTargetNotFoundError: If the cluster or node does not exist.
            SyncTargetError: If credentials are missing or cannot be decrypted.
        """
        target_type = SyncTargetType(target_type)
        if target_type == SyncTargetType.CLUSTER:
            cluster = self.get_cluster(db, target_id)
            if not cluster:
                raise SyncTargetNotFoundError(f"Cluster {target_id} not found")
            name, hostname = cluster.name, cluster.hostname
            username, password_encrypted = cluster.username, cluster.password_encrypted
            ssh_username, ssh_password_encrypted = cluster.ssh_username, cluster.ssh_password_encrypted
        else:
            node = self.get_node(db, target_id)
            if not node:
                raise SyncTargetNotFoundError(f"Node {target_id} not found")
            cluster = node.cluster
            name, hostname = node.name, node.hostname
            username = node.username or cluster.username
            password_encrypted = node.password_encrypted or cluster.password_encrypted
            ssh_username = node.ssh_username or cluster.ssh_username
            ssh_password_encrypted = node.ssh_password_encrypted or cluster.ssh_password_encrypted

        what = f"credentials for {target_type.value} {target_id}"
        password = self._decrypt(password_encrypted, what)
        if not username or not password:
            raise SyncTargetError(f"Missing {what}")

        return SyncTarget(
            target_type=target_type,
            target_id=target_id,
            cluster_id=cluster.id,
            name=name,
            hostname=hostname,
            username=username,
            password=password,
            schema_version=cluster.schema_version,
            ssh_username=ssh_username,
            ssh_password=self._decrypt(ssh_password_encrypted, f"SSH {what}"),
        )
