"""Static registry of the UCM entity types the sync pipeline knows about.

Each entry says where an entity comes from on the AXL side (a ``list``
method, an SQL query, and optionally a ``get`` method for list+get
fan-out), how a raw record is flattened into a storage row, and which
table and natural key it is upserted into.

The registry is also the explicit list of cluster-scoped tables used to
cascade deletes when a cluster is removed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pingtone.models import (
    CallingSearchSpace,
    CallPickupGroup,
    CommonPhoneConfig,
    DeviceLine,
    DevicePool,
    DeviceProfile,
    Intercom,
    Line,
    LineGroup,
    Location,
    Phone,
    PhoneButtonTemplate,
    PhoneModel,
    RecordingProfile,
    RemoteDestination,
    RemoteDestinationProfile,
    RoutePartition,
    ServiceProfile,
    SipProfile,
    SoftkeyTemplate,
    UcmRole,
    UcmUser,
    VoicemailProfile,
)

logger = logging.getLogger(__name__)

INFRA_PHASE = "infra"
SERVICES_PHASE = "services"

DEVICE_LINE_UNIQUE_BY = ("ucm_cluster_id", "device_uuid", "line_index")

LinkExtractor = Callable[[Mapping[str, Any], int], List[Dict[str, Any]]]


def normalize_uuid(value: Any) -> Optional[str]:
    """Lower-case a UCM pkid/uuid and strip the surrounding braces."""
    value = ref_name(value)
    if not value:
        return None
    return str(value).strip().strip("{}").lower() or None


def ref_name(value: Any) -> Any:
    """Resolve a name-only reference.

    AXL returns foreign keys as ``<devicePoolName uuid="...">Default</devicePoolName>``,
    which the client turns into ``{"_value": "Default", "uuid": "..."}``.
    """
    if isinstance(value, Mapping):
        return value.get("_value")
    return value


def as_list(value: Any) -> List[Any]:
    """AXL collapses single-item collections into a bare element."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def dig(record: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested dicts."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _device_line_links(record: Mapping[str, Any], cluster_id: int) -> List[Dict[str, Any]]:
    device_uuid = normalize_uuid(record.get("uuid"))
    if not device_uuid:
        return []

    links = []
    for position, line in enumerate(as_list(dig(record, "lines.line")), start=1):
        if not isinstance(line, Mapping):
            continue
        dirn = line.get("dirn") or {}
        try:
            line_index = int(line.get("index") or position)
        except (TypeError, ValueError):
            line_index = position
        links.append({
            "ucm_cluster_id": cluster_id,
            "device_uuid": device_uuid,
            "device_name": ref_name(record.get("name")),
            "line_index": line_index,
            "line_uuid": normalize_uuid(dirn.get("uuid")) if isinstance(dirn, Mapping) else None,
            "pattern": ref_name(dirn.get("pattern")) if isinstance(dirn, Mapping) else None,
            "route_partition_name": ref_name(dirn.get("routePartitionName")) if isinstance(dirn, Mapping) else None,
            "label": ref_name(line.get("label")),
        })
    return links


@dataclass(frozen=True)
class EntitySpec:
    """How one entity type is fetched, normalized and stored."""

    entity_type: str
    phase: str
    model: type
    unique_by: Tuple[str, ...]
    list_method: Optional[str] = None
    response_tag: Optional[str] = None
    search_criteria: Mapping[str, str] = field(default_factory=lambda: {"name": "%"})
    returned_tags: Tuple[str, ...] = ("name", "uuid")
    sql: Optional[str] = None
    get_method: Optional[str] = None
    get_key: Optional[str] = None
    # storage column -> dotted path in the AXL record
    fields: Mapping[str, str] = field(default_factory=dict)
    link_extractor: Optional[LinkExtractor] = None

    @property
    def is_fan_out(self) -> bool:
        return self.get_method is not None


def _named(entity_type: str, model: type, list_method: str, response_tag: str, **kwargs) -> EntitySpec:
    return EntitySpec(
        entity_type=entity_type,
        phase=INFRA_PHASE,
        model=model,
        unique_by=("ucm_cluster_id", "name"),
        list_method=list_method,
        response_tag=response_tag,
        **kwargs,
    )


def _detailed(entity_type: str, model: type, response_tag: str, list_method: str, get_method: str, **kwargs) -> EntitySpec:
    kwargs.setdefault("search_criteria", {"name": "%"})
    kwargs.setdefault("returned_tags", ("name",))
    kwargs.setdefault("get_key", "name")
    return EntitySpec(
        entity_type=entity_type,
        phase=SERVICES_PHASE,
        model=model,
        unique_by=("ucm_cluster_id", "uuid"),
        list_method=list_method,
        response_tag=response_tag,
        get_method=get_method,
        **kwargs,
    )


_SPECS = [
    _named("recording_profiles", RecordingProfile, "listRecordingProfile", "recordingProfile"),
    _named("voicemail_profiles", VoicemailProfile, "listVoiceMailProfile", "voiceMailProfile"),
    EntitySpec(
        entity_type="phone_models",
        phase=INFRA_PHASE,
        model=PhoneModel,
        unique_by=("ucm_cluster_id", "name"),
        sql="SELECT name FROM typemodel WHERE tkclass = 1",
    ),
    _named("softkey_templates", SoftkeyTemplate, "listSoftKeyTemplate", "softKeyTemplate"),
    _named(
        "route_partitions", RoutePartition, "listRoutePartition", "routePartition",
        returned_tags=("name", "partitionUsage", "uuid"),
        fields={"partition_usage": "partitionUsage"},
    ),
    _named("calling_search_spaces", CallingSearchSpace, "listCss", "css"),
    _named("device_pools", DevicePool, "listDevicePool", "devicePool"),
    _named("service_profiles", ServiceProfile, "listServiceProfile", "serviceProfile"),
    _named("sip_profiles", SipProfile, "listSipProfile", "sipProfile"),
    _named("locations", Location, "listLocation", "location"),
    _named(
        "call_pickup_groups", CallPickupGroup, "listCallPickupGroup", "callPickupGroup",
        search_criteria={"pattern": "%"},
        returned_tags=("name", "pattern", "routePartitionName", "description", "uuid"),
        fields={"pattern": "pattern", "route_partition_name": "routePartitionName", "description": "description"},
    ),
    _named("common_phone_configs", CommonPhoneConfig, "listCommonPhoneConfig", "commonPhoneConfig"),
    _named(
        "line_groups", LineGroup, "listLineGroup", "lineGroup",
        returned_tags=("name", "distributionAlgorithm", "uuid"),
        fields={"distribution_algorithm": "distributionAlgorithm"},
    ),
    EntitySpec(
        entity_type="ucm_users",
        phase=INFRA_PHASE,
        model=UcmUser,
        unique_by=("ucm_cluster_id", "uuid"),
        list_method="listUser",
        response_tag="user",
        search_criteria={"userid": "%"},
        returned_tags=("userid", "firstName", "lastName", "mailid", "uuid"),
        fields={"userid": "userid", "first_name": "firstName", "last_name": "lastName", "email": "mailid"},
    ),
    _named("phone_button_templates", PhoneButtonTemplate, "listPhoneButtonTemplate", "phoneButtonTemplate"),
    EntitySpec(
        entity_type="ucm_roles",
        phase=INFRA_PHASE,
        model=UcmRole,
        unique_by=("ucm_cluster_id", "uuid"),
        sql="SELECT pkid AS uuid, name FROM dirgroup",
    ),
    _detailed(
        "phones", Phone, "phone", "listPhone", "getPhone",
        fields={
            "description": "description",
            "model": "model",
            "protocol": "protocol",
            "device_pool_name": "devicePoolName",
            "calling_search_space_name": "callingSearchSpaceName",
            "owner_user_name": "ownerUserName",
        },
        link_extractor=_device_line_links,
    ),
    _detailed(
        "device_profiles", DeviceProfile, "deviceProfile", "listDeviceProfile", "getDeviceProfile",
        fields={"description": "description", "model": "model", "protocol": "protocol"},
        link_extractor=_device_line_links,
    ),
    _detailed(
        "remote_destination_profiles", RemoteDestinationProfile, "remoteDestinationProfile",
        "listRemoteDestinationProfile", "getRemoteDestinationProfile",
        fields={"description": "description", "user_id": "userId"},
    ),
    _detailed(
        "remote_destinations", RemoteDestination, "remoteDestination",
        "listRemoteDestination", "getRemoteDestination",
        search_criteria={"destination": "%"},
        returned_tags=("destination",),
        get_key="destination",
        fields={"destination": "destination", "owner_user_id": "ownerUserId"},
    ),
    _detailed(
        "lines", Line, "line", "listLine", "getLine",
        search_criteria={"pattern": "%", "usage": "Device"},
        returned_tags=("uuid",),
        get_key="uuid",
        fields={
            "pattern": "pattern",
            "route_partition_name": "routePartitionName",
            "description": "description",
            "usage": "usage",
        },
    ),
    _detailed(
        "intercoms", Intercom, "line", "listLine", "getLine",
        search_criteria={"pattern": "%", "usage": "Device Intercom"},
        returned_tags=("uuid",),
        get_key="uuid",
        fields={"pattern": "pattern", "route_partition_name": "routePartitionName", "description": "description"},
    ),
]

ENTITY_SPECS: Dict[str, EntitySpec] = {spec.entity_type: spec for spec in _SPECS}

INFRA_ENTITY_TYPES: Tuple[str, ...] = tuple(s.entity_type for s in _SPECS if s.phase == INFRA_PHASE)
SERVICE_ENTITY_TYPES: Tuple[str, ...] = tuple(s.entity_type for s in _SPECS if s.phase == SERVICES_PHASE)

# Every table holding rows scoped to a cluster, children before parents
CLUSTER_SCOPED_MODELS: Tuple[type, ...] = (DeviceLine,) + tuple(
    dict.fromkeys(spec.model for spec in _SPECS)
)


def get_entity_spec(entity_type: str) -> EntitySpec:
    """Look up an entity type.

    Raises:
        ValueError: If the entity type is not registered.
    """
    try:
        return ENTITY_SPECS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type '{entity_type}'") from None


def _model_columns(model: type) -> List[str]:
    return [column.name for column in model.__table__.columns]


def normalize_record(spec: EntitySpec, record: Mapping[str, Any], cluster_id: int) -> Optional[Dict[str, Any]]:
    """Flatten one AXL record into a storage row for ``spec.model``.

    Returns None when the record lacks its natural key.
    """
    row: Dict[str, Any] = {
        "ucm_cluster_id": cluster_id,
        "name": ref_name(record.get("name")),
        "uuid": normalize_uuid(record.get("uuid")),
        "data": dict(record),
    }
    for column, path in spec.fields.items():
        row[column] = ref_name(dig(record, path))

    if any(row.get(key) in (None, "") for key in spec.unique_by):
        return None
    return row


def normalize_records(spec: EntitySpec, records: List[Mapping[str, Any]], cluster_id: int) -> List[Dict[str, Any]]:
    """Normalize a batch of records, skipping and logging keyless ones.

    All returned rows carry the same column set so they can share one
    multi-row insert statement.
    """
    columns = [c for c in _model_columns(spec.model) if c not in ("id", "created_at", "updated_at")]
    rows = []
    skipped = 0
    for record in records:
        if not isinstance(record, Mapping):
            skipped += 1
            continue
        row = normalize_record(spec, record, cluster_id)
        if row is None:
            skipped += 1
            continue
        rows.append({column: row.get(column) for column in columns})

    if skipped:
        logger.warning(f"Skipped {skipped} {spec.entity_type} records without a {'/'.join(spec.unique_by[1:])}")
    return rows


def extract_links(spec: EntitySpec, records: List[Mapping[str, Any]], cluster_id: int) -> List[Dict[str, Any]]:
    """Collect device-line association rows for entity types that carry them."""
    if spec.link_extractor is None:
        return []
    links = []
    for record in records:
        if isinstance(record, Mapping):
            links.extend(spec.link_extractor(record, cluster_id))
    return links
