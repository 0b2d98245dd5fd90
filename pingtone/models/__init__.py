"""Database models package."""

from pingtone.models.ucm import UcmCluster, UcmNode
from pingtone.models.sync_history import SyncHistory, SyncStatus, SyncOutcome
from pingtone.models.infrastructure import (
    RecordingProfile,
    VoicemailProfile,
    PhoneModel,
    SoftkeyTemplate,
    RoutePartition,
    CallingSearchSpace,
    DevicePool,
    ServiceProfile,
    SipProfile,
    Location,
    CallPickupGroup,
    CommonPhoneConfig,
    LineGroup,
    UcmUser,
    PhoneButtonTemplate,
    UcmRole,
)
from pingtone.models.services import (
    Phone,
    DeviceProfile,
    RemoteDestinationProfile,
    RemoteDestination,
    Line,
    Intercom,
    DeviceLine,
)

__all__ = [
    "UcmCluster",
    "UcmNode",
    "SyncHistory",
    "SyncStatus",
    "SyncOutcome",
    "RecordingProfile",
    "VoicemailProfile",
    "PhoneModel",
    "SoftkeyTemplate",
    "RoutePartition",
    "CallingSearchSpace",
    "DevicePool",
    "ServiceProfile",
    "SipProfile",
    "Location",
    "CallPickupGroup",
    "CommonPhoneConfig",
    "LineGroup",
    "UcmUser",
    "PhoneButtonTemplate",
    "UcmRole",
    "Phone",
    "DeviceProfile",
    "RemoteDestinationProfile",
    "RemoteDestination",
    "Line",
    "Intercom",
    "DeviceLine",
]
