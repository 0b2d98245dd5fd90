"""UCM cluster and node database models."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from pingtone.database.database import Base


class UcmCluster(Base):
    """A Cisco UCM cluster reached through its publisher's AXL endpoint."""

    __tablename__ = "ucm_clusters"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    hostname = Column(String, nullable=False)
    username = Column(String, nullable=False)
    password_encrypted = Column(String, nullable=False)
    ssh_username = Column(String, nullable=True)
    ssh_password_encrypted = Column(String, nullable=True)
    schema_version = Column(String, nullable=False)
    version = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_sync_at = Column(DateTime, nullable=True)

    nodes = relationship(
        "UcmNode",
        back_populates="cluster",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="UcmNode.id",
    )

    @property
    def publisher(self):
        """Return the publisher node, if discovery recorded one."""
        for node in self.nodes:
            if node.node_role == "publisher":
                return node
        return None


class UcmNode(Base):
    """A single server (publisher or subscriber) within a UCM cluster."""

    __tablename__ = "ucm_nodes"

    id = Column(Integer, primary_key=True, index=True)
    ucm_cluster_id = Column(Integer, ForeignKey("ucm_clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    hostname = Column(String, nullable=False)
    node_role = Column(String, nullable=True)  # publisher or subscriber
    # Optional per-node credentials, falling back to the cluster's
    username = Column(String, nullable=True)
    password_encrypted = Column(String, nullable=True)
    ssh_username = Column(String, nullable=True)
    ssh_password_encrypted = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    cluster = relationship("UcmCluster", back_populates="nodes")

    __table_args__ = (
        UniqueConstraint("ucm_cluster_id", "name", name="uq_ucm_nodes_cluster_name"),
        CheckConstraint("node_role IN ('publisher', 'subscriber')", name="ck_ucm_nodes_role"),
    )
