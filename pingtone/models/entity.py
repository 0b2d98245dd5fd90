"""Shared columns for entity records synced from UCM."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import declared_attr


class UcmEntityMixin:
    """Columns common to every synced entity table.

    ``created_at`` is written on insert only and ``updated_at`` on every
    upsert; both are set explicitly by the bulk upsert rather than by ORM
    defaults so they share one timestamp per chunk.
    """

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=True)
    uuid = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    @declared_attr
    def ucm_cluster_id(cls):
        return Column(Integer, ForeignKey("ucm_clusters.id", ondelete="CASCADE"), nullable=False, index=True)
