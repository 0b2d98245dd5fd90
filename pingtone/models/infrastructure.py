"""Cluster-wide configuration entities synced during the infra phase."""

from sqlalchemy import Column, String, UniqueConstraint
from pingtone.database.database import Base
from pingtone.models.entity import UcmEntityMixin


def _unique(table: str, *columns: str) -> UniqueConstraint:
    return UniqueConstraint("ucm_cluster_id", *columns, name=f"uq_{table}_{'_'.join(columns)}")


class RecordingProfile(UcmEntityMixin, Base):
    __tablename__ = "recording_profiles"
    __table_args__ = (_unique("recording_profiles", "name"),)


class VoicemailProfile(UcmEntityMixin, Base):
    __tablename__ = "voicemail_profiles"
    __table_args__ = (_unique("voicemail_profiles", "name"),)


class PhoneModel(UcmEntityMixin, Base):
    __tablename__ = "phone_models"
    __table_args__ = (_unique("phone_models", "name"),)


class SoftkeyTemplate(UcmEntityMixin, Base):
    __tablename__ = "softkey_templates"
    __table_args__ = (_unique("softkey_templates", "name"),)


class RoutePartition(UcmEntityMixin, Base):
    __tablename__ = "route_partitions"
    __table_args__ = (_unique("route_partitions", "name"),)

    partition_usage = Column(String, nullable=True)


class CallingSearchSpace(UcmEntityMixin, Base):
    __tablename__ = "calling_search_spaces"
    __table_args__ = (_unique("calling_search_spaces", "name"),)


class DevicePool(UcmEntityMixin, Base):
    __tablename__ = "device_pools"
    __table_args__ = (_unique("device_pools", "name"),)


class ServiceProfile(UcmEntityMixin, Base):
    __tablename__ = "service_profiles"
    __table_args__ = (_unique("service_profiles", "name"),)


class SipProfile(UcmEntityMixin, Base):
    __tablename__ = "sip_profiles"
    __table_args__ = (_unique("sip_profiles", "name"),)


class Location(UcmEntityMixin, Base):
    __tablename__ = "locations"
    __table_args__ = (_unique("locations", "name"),)


class CallPickupGroup(UcmEntityMixin, Base):
    __tablename__ = "call_pickup_groups"
    __table_args__ = (_unique("call_pickup_groups", "name"),)

    pattern = Column(String, nullable=True)
    route_partition_name = Column(String, nullable=True)
    description = Column(String, nullable=True)


class CommonPhoneConfig(UcmEntityMixin, Base):
    __tablename__ = "common_phone_configs"
    __table_args__ = (_unique("common_phone_configs", "name"),)


class LineGroup(UcmEntityMixin, Base):
    __tablename__ = "line_groups"
    __table_args__ = (_unique("line_groups", "name"),)

    distribution_algorithm = Column(String, nullable=True)


class UcmUser(UcmEntityMixin, Base):
    __tablename__ = "ucm_users"
    __table_args__ = (_unique("ucm_users", "uuid"),)

    userid = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)


class PhoneButtonTemplate(UcmEntityMixin, Base):
    __tablename__ = "phone_button_templates"
    __table_args__ = (_unique("phone_button_templates", "name"),)


class UcmRole(UcmEntityMixin, Base):
    __tablename__ = "ucm_roles"
    __table_args__ = (_unique("ucm_roles", "uuid"),)
