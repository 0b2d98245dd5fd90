"""Async AXL (SOAP/XML) client for Cisco UCM."""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from pingtone.config import settings
from pingtone.services.entity_registry import EntitySpec, as_list, get_entity_spec
from pingtone.services.sync_target import SyncTarget

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
AXL_NS_TEMPLATE = "http://www.cisco.com/AXL/API/{version}"

NODE_DISCOVERY_SQL = (
    "SELECT p.name processnode, t.name type FROM processnode p "
    "JOIN typenodeusage t ON p.tknodeusage = t.enum WHERE p.name != 'EnterpriseWideData'"
)

_AUTH_FAULTS = ("authentication failed", "invalid credentials", "access denied", "unauthorized")
_CONNECTION_FAULTS = ("connection refused", "could not connect", "timed out", "temporarily unavailable", "connection reset")


class AxlError(Exception):
    """Base class for AXL failures."""


class AxlTransientError(AxlError):
    """Timeouts, network errors, rate limiting and server-side unavailability."""


class AxlAuthError(AxlError):
    """Rejected credentials. Never retried."""


class AxlResponseError(AxlError):
    """Malformed response or a SOAP fault that retrying will not fix."""


class AxlQueryTooLargeError(AxlError):
    """UCM refused a list because it matched more rows than it will return at once."""

    def __init__(self, message: str, total_rows: int, suggested_rows: int):
        super().__init__(message)
        self.total_rows = total_rows
        self.suggested_rows = suggested_rows


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_data(element: ET.Element) -> Any:
    """Convert an XML element into plain dict/list/str structures.

    Namespaces are stripped and attributes are merged into the element's
    dict. A leaf carrying attributes becomes ``{"_value": text, **attrs}``.
    Repeated child tags are collected into lists.
    """
    attributes = {_local_name(k): v for k, v in element.attrib.items()}
    children = list(element)
    if not children:
        text = element.text.strip() if element.text else None
        if attributes:
            return {"_value": text or None, **attributes}
        return text or None

    data: Dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = _element_to_data(child)
        if name in data:
            if not isinstance(data[name], list):
                data[name] = [data[name]]
            data[name].append(value)
        else:
            data[name] = value
    for key, value in attributes.items():
        data.setdefault(key, value)
    return data


def _append_children(parent: ET.Element, payload: Mapping[str, Any]) -> None:
    for key, value in payload.items():
        for item in value if isinstance(value, list) else [value]:
            child = ET.SubElement(parent, key)
            if isinstance(item, Mapping):
                _append_children(child, item)
            elif item is not None:
                child.text = str(item)


def _classify_fault(fault_string: str) -> AxlError:
    lowered = fault_string.lower()
    if "query request too large" in lowered:
        numbers = [int(n) for n in re.findall(r"[0-9]+", fault_string)]
        if len(numbers) >= 2:
            return AxlQueryTooLargeError(fault_string, total_rows=numbers[0], suggested_rows=numbers[1])
    if any(marker in lowered for marker in _AUTH_FAULTS):
        return AxlAuthError(fault_string)
    if any(marker in lowered for marker in _CONNECTION_FAULTS):
        return AxlTransientError(fault_string)
    return AxlResponseError(fault_string)


class AxlClient:
    """Client for the AXL SOAP API of one UCM server.

    Every call maps failures onto the ``AxlError`` hierarchy so callers can
    tell transient errors (worth retrying) from fatal ones.
    """

    def __init__(
        self,
        target: SyncTarget,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
        verify: Optional[bool] = None,
        page_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize AXL client.

        Args:
            target: Host, credentials and schema version to talk to.
            port: AXL HTTPS port (defaults to settings.axl_port).
            timeout: Per request timeout in seconds (defaults to settings.axl_timeout_seconds).
            verify: TLS verification (defaults to settings.axl_verify_tls).
            page_size: Rows requested per list page (defaults to settings.axl_page_size).
            transport: Optional httpx transport, used by tests.
        """
        self.target = target
        self.port = port or settings.axl_port
        self.timeout = timeout or settings.axl_timeout_seconds
        self.verify = settings.axl_verify_tls if verify is None else verify
        self.page_size = page_size or settings.axl_page_size
        # Reduced page sizes after a "query too large" fault, per entity type
        self._reduced_page_sizes: Dict[str, int] = {}
        self.base_url = f"https://{target.hostname}:{self.port}/axl/"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.target.username, self.target.password),
            timeout=self.timeout,
            verify=self.verify,
            headers={"Content-Type": "text/xml; charset=utf-8"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client.

        Raises:
            RuntimeError: If client is not initialized (use async context manager).
        """
        if self._client is None:
            raise RuntimeError("AxlClient must be used as async context manager")
        return self._client

    def _build_envelope(self, method: str, payload: Mapping[str, Any]) -> bytes:
        axl_ns = AXL_NS_TEMPLATE.format(version=self.target.schema_version)
        envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
        body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        request = ET.SubElement(body, f"{{{axl_ns}}}{method}")
        _append_children(request, payload)
        return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)

    async def _call(self, method: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        """Invoke one AXL method and return the converted ``<return>`` element.

        Raises:
            AxlTransientError: Timeouts, network errors, HTTP 429/5xx without a usable fault.
            AxlAuthError: HTTP 401/403 or an authentication fault.
            AxlQueryTooLargeError: The list matched more rows than UCM returns at once.
            AxlResponseError: Malformed XML or any other fault.
        """
        client = self._get_client()
        headers = {"SOAPAction": f'"CUCM:DB ver={self.target.schema_version} {method}"'}
        logger.debug(f"{self.target.name}: AXL {method}")

        try:
            response = await client.post("", content=self._build_envelope(method, payload or {}), headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.target.name}: timeout calling {method}")
            raise AxlTransientError(f"Timeout calling {method}: {e}") from e
        except httpx.TransportError as e:
            logger.warning(f"{self.target.name}: network error calling {method}: {e}")
            raise AxlTransientError(f"Network error calling {method}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AxlAuthError(f"AXL rejected credentials for {self.target.username} (HTTP {status})")
        if status in (429, 502, 503, 504):
            raise AxlTransientError(f"AXL unavailable for {method} (HTTP {status})")

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            if status >= 500:
                raise AxlTransientError(f"AXL server error for {method} (HTTP {status})") from e
            raise AxlResponseError(f"Malformed AXL response for {method}: {e}") from e

        fault = next((el for el in root.iter() if _local_name(el.tag) == "Fault"), None)
        if fault is not None:
            fault_string = next(
                (el.text or "" for el in fault.iter() if _local_name(el.tag) == "faultstring"),
                "Unknown SOAP fault",
            )
            logger.error(f"{self.target.name}: SOAP fault from {method}: {fault_string}")
            raise _classify_fault(fault_string)

        if status >= 500:
            raise AxlTransientError(f"AXL server error for {method} (HTTP {status})")
        if status >= 400:
            raise AxlResponseError(f"Unexpected HTTP {status} from AXL {method}")

        result = next((el for el in root.iter() if _local_name(el.tag) == "return"), None)
        if result is None:
            raise AxlResponseError(f"AXL response for {method} has no return element")
        return _element_to_data(result)

    async def get_version(self) -> str:
        """Return the UCM version, e.g. ``14.0.1.13900(3)``."""
        data = await self._call("getCCMVersion")
        version = data.get("componentVersion", {}).get("version") if isinstance(data, dict) else None
        if not version:
            raise AxlResponseError("getCCMVersion response has no version")
        return version

    async def execute_sql_query(self, sql: str) -> List[Dict[str, Any]]:
        """Run a read-only SQL query against the UCM database."""
        data = await self._call("executeSQLQuery", {"sql": sql})
        if not isinstance(data, dict):
            return []
        return [row for row in as_list(data.get("row")) if isinstance(row, dict)]

    async def discover_nodes(self) -> List[Dict[str, Any]]:
        """List the cluster's servers as ``{"processnode": name, "type": Publisher|Subscriber}``."""
        return await self.execute_sql_query(NODE_DISCOVERY_SQL)

    def page_size_for(self, entity_type: str) -> int:
        return self._reduced_page_sizes.get(entity_type, self.page_size)

    def _list_payload(self, spec: EntitySpec, skip: int, first: int) -> Dict[str, Any]:
        return {
            "searchCriteria": dict(spec.search_criteria),
            "returnedTags": {tag: None for tag in spec.returned_tags},
            "skip": skip,
            "first": first,
        }

    async def _list_page(self, spec: EntitySpec, skip: int, first: int) -> List[Dict[str, Any]]:
        data = await self._call(spec.list_method, self._list_payload(spec, skip, first))
        if not isinstance(data, dict):
            return []
        return [record for record in as_list(data.get(spec.response_tag)) if isinstance(record, dict)]

    async def list(self, entity_type: str, page_token: Optional[int] = None) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """Fetch one page of an entity type.

        Args:
            entity_type: A registered entity type.
            page_token: Skip offset returned by the previous page, or None for the first.

        Returns:
            Tuple of (records, next page token or None when exhausted).
        """
        spec = get_entity_spec(entity_type)
        if spec.sql:
            if page_token:
                return [], None
            return await self.execute_sql_query(spec.sql), None

        skip = page_token or 0
        first = self.page_size_for(entity_type)
        try:
            records = await self._list_page(spec, skip, first)
        except AxlQueryTooLargeError as e:
            first = max(1, e.suggested_rows // 5)
            self._reduced_page_sizes[entity_type] = first
            logger.info(
                f"{self.target.name}: {entity_type} matched {e.total_rows} rows, "
                f"paginating with {first} rows per page"
            )
            records = await self._list_page(spec, skip, first)

        next_token = skip + len(records) if len(records) >= first else None
        return records, next_token

    async def list_all(self, entity_type: str) -> List[Dict[str, Any]]:
        """Fetch every page of an entity type."""
        records: List[Dict[str, Any]] = []
        token: Optional[int] = None
        while True:
            page, token = await self.list(entity_type, token)
            records.extend(page)
            if token is None:
                return records

    async def get(self, entity_type: str, key: str) -> Dict[str, Any]:
        """Fetch full detail for one record of a list+get entity type."""
        spec = get_entity_spec(entity_type)
        if not spec.get_method:
            raise ValueError(f"Entity type '{entity_type}' has no get operation")
        data = await self._call(spec.get_method, {spec.get_key: key})
        record = data.get(spec.response_tag) if isinstance(data, dict) else None
        if not isinstance(record, dict):
            raise AxlResponseError(f"{spec.get_method} returned no {spec.response_tag} for {key}")
        return record
