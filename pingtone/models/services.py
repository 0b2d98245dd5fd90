"""Per-device operational entities synced during the services phase."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from pingtone.database.database import Base
from pingtone.models.entity import UcmEntityMixin


class Phone(UcmEntityMixin, Base):
    __tablename__ = "phones"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_phones_uuid"),)

    description = Column(String, nullable=True)
    model = Column(String, nullable=True)
    protocol = Column(String, nullable=True)
    device_pool_name = Column(String, nullable=True)
    calling_search_space_name = Column(String, nullable=True)
    owner_user_name = Column(String, nullable=True)


class DeviceProfile(UcmEntityMixin, Base):
    __tablename__ = "device_profiles"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_device_profiles_uuid"),)

    description = Column(String, nullable=True)
    model = Column(String, nullable=True)
    protocol = Column(String, nullable=True)


class RemoteDestinationProfile(UcmEntityMixin, Base):
    __tablename__ = "remote_destination_profiles"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_remote_destination_profiles_uuid"),)

    description = Column(String, nullable=True)
    user_id = Column(String, nullable=True)


class RemoteDestination(UcmEntityMixin, Base):
    __tablename__ = "remote_destinations"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_remote_destinations_uuid"),)

    destination = Column(String, nullable=True)
    owner_user_id = Column(String, nullable=True)


class Line(UcmEntityMixin, Base):
    __tablename__ = "lines"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_lines_uuid"),)

    pattern = Column(String, nullable=True, index=True)
    route_partition_name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    usage = Column(String, nullable=True)


class Intercom(UcmEntityMixin, Base):
    __tablename__ = "intercoms"
    __table_args__ = (UniqueConstraint("ucm_cluster_id", "uuid", name="uq_intercoms_uuid"),)

    pattern = Column(String, nullable=True)
    route_partition_name = Column(String, nullable=True)
    description = Column(String, nullable=True)


class DeviceLine(Base):
    """Association between a device (phone or device profile) and a line appearance."""

    __tablename__ = "device_lines"

    id = Column(Integer, primary_key=True)
    ucm_cluster_id = Column(Integer, ForeignKey("ucm_clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    device_uuid = Column(String, nullable=False)
    device_name = Column(String, nullable=True)
    line_index = Column(Integer, nullable=False)
    line_uuid = Column(String, nullable=True)
    pattern = Column(String, nullable=True)
    route_partition_name = Column(String, nullable=True)
    label = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("ucm_cluster_id", "device_uuid", "line_index", name="uq_device_lines_device_index"),
        Index("ix_device_lines_line_uuid", "line_uuid"),
    )
