"""Tests for the AXL client."""

import base64
import xml.etree.ElementTree as ET

import httpx
import pytest

from pingtone.services.axl_client import (
    AxlAuthError,
    AxlClient,
    AxlResponseError,
    AxlTransientError,
    _element_to_data,
)
from pingtone.services.sync_target import SyncTarget, SyncTargetType

TARGET = SyncTarget(
    target_type=SyncTargetType.CLUSTER,
    target_id=1,
    cluster_id=1,
    name="HQ",
    hostname="cucm-pub.example.com",
    username="axladmin",
    password="s3cret",
    schema_version="14.0",
)


def soap_response(inner: str, method: str = "listResponse") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soapenv:Body>"
        f'<ns:{method} xmlns:ns="http://www.cisco.com/AXL/API/14.0">'
        f"<return>{inner}</return>"
        f"</ns:{method}>"
        "</soapenv:Body></soapenv:Envelope>"
    )


def soap_fault(message: str) -> str:
    return (
        '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soapenv:Body><soapenv:Fault>"
        "<faultcode>soapenv:Server</faultcode>"
        f"<faultstring>{message}</faultstring>"
        "</soapenv:Fault></soapenv:Body></soapenv:Envelope>"
    )


def request_body(request: httpx.Request) -> dict:
    """Parse the first element under the SOAP body of a request."""
    root = ET.fromstring(request.content)
    body = next(el for el in root if el.tag.endswith("Body"))
    method = list(body)[0]
    return {"method": method.tag.rsplit("}", 1)[-1], "data": _element_to_data(method)}


def make_client(handler, **kwargs) -> AxlClient:
    return AxlClient(TARGET, transport=httpx.MockTransport(handler), **kwargs)


class TestElementConversion:
    """Tests for XML to dict conversion."""

    def test_attributes_and_repeated_tags(self):
        element = ET.fromstring(
            '<phone uuid="{ABC}">'
            "<name>SEP001122334455</name>"
            '<devicePoolName uuid="{DP}">Default</devicePoolName>'
            "<lines><line><index>1</index></line><line><index>2</index></line></lines>"
            "<description/>"
            "</phone>"
        )

        data = _element_to_data(element)

        assert data["uuid"] == "{ABC}"
        assert data["name"] == "SEP001122334455"
        assert data["devicePoolName"] == {"_value": "Default", "uuid": "{DP}"}
        assert [line["index"] for line in data["lines"]["line"]] == ["1", "2"]
        assert data["description"] is None


class TestAxlClient:
    """Tests for AxlClient requests and error mapping."""

    @pytest.mark.asyncio
    async def test_get_version_and_request_shape(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, text=soap_response(
                "<componentVersion><version>14.0.1.13900(3)</version></componentVersion>",
                "getCCMVersionResponse",
            ))

        async with make_client(handler) as client:
            version = await client.get_version()

        assert version == "14.0.1.13900(3)"
        request = seen["request"]
        assert str(request.url) == "https://cucm-pub.example.com:8443/axl/"
        assert request.headers["SOAPAction"] == '"CUCM:DB ver=14.0 getCCMVersion"'
        expected = base64.b64encode(b"axladmin:s3cret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert request_body(request)["method"] == "getCCMVersion"

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = make_client(lambda request: httpx.Response(200))
        with pytest.raises(RuntimeError, match="async context manager"):
            await client.get_version()

    @pytest.mark.asyncio
    async def test_list_pages_with_skip_and_first(self):
        bodies = []

        def handler(request):
            body = request_body(request)
            bodies.append(body)
            skip = int(body["data"]["skip"])
            names = [f"PT_{i}" for i in range(5)][skip:skip + 2]
            inner = "".join(f'<routePartition uuid="{{{n}}}"><name>{n}</name></routePartition>' for n in names)
            return httpx.Response(200, text=soap_response(inner))

        async with make_client(handler, page_size=2) as client:
            records = await client.list_all("route_partitions")

        assert [r["name"] for r in records] == ["PT_0", "PT_1", "PT_2", "PT_3", "PT_4"]
        assert [b["data"]["skip"] for b in bodies] == ["0", "2", "4"]
        assert bodies[0]["method"] == "listRoutePartition"
        assert bodies[0]["data"]["searchCriteria"] == {"name": "%"}
        assert bodies[0]["data"]["first"] == "2"

    @pytest.mark.asyncio
    async def test_single_record_page(self):
        def handler(request):
            return httpx.Response(200, text=soap_response('<devicePool uuid="{1}"><name>DP_HQ</name></devicePool>'))

        async with make_client(handler) as client:
            records, token = await client.list("device_pools")

        assert records == [{"name": "DP_HQ", "uuid": "{1}"}]
        assert token is None

    @pytest.mark.asyncio
    async def test_query_too_large_shrinks_page(self):
        firsts = []

        def handler(request):
            body = request_body(request)
            first = body["data"]["first"]
            firsts.append((body["method"], first))
            if body["method"] == "listUser" and first == "1000":
                return httpx.Response(500, text=soap_fault(
                    "Query request too large. Total rows matched: 5000 rows. "
                    "Suggestive Row Fetch: less than 1000 rows"
                ))
            if body["method"] == "listLocation":
                return httpx.Response(200, text=soap_response("<location><name>Hub_None</name></location>"))
            return httpx.Response(200, text=soap_response("<user><userid>jdoe</userid></user>"))

        async with make_client(handler, page_size=1000) as client:
            records, token = await client.list("ucm_users")
            await client.list("ucm_users")
            await client.list("locations")

        # The reduced size sticks to the faulting entity type only
        assert firsts == [
            ("listUser", "1000"),
            ("listUser", "200"),
            ("listUser", "200"),
            ("listLocation", "1000"),
        ]
        assert client.page_size == 1000
        assert client.page_size_for("ucm_users") == 200
        assert client.page_size_for("locations") == 1000
        assert records == [{"userid": "jdoe"}]
        assert token is None

    @pytest.mark.asyncio
    async def test_sql_query_rows(self):
        def handler(request):
            body = request_body(request)
            assert body["method"] == "executeSQLQuery"
            assert "processnode" in body["data"]["sql"]
            return httpx.Response(200, text=soap_response(
                "<row><processnode>cucm-pub</processnode><type>Publisher</type></row>"
                "<row><processnode>cucm-sub1</processnode><type>Subscriber</type></row>",
                "executeSQLQueryResponse",
            ))

        async with make_client(handler) as client:
            nodes = await client.discover_nodes()

        assert nodes == [
            {"processnode": "cucm-pub", "type": "Publisher"},
            {"processnode": "cucm-sub1", "type": "Subscriber"},
        ]

    @pytest.mark.asyncio
    async def test_sql_backed_entity_list(self):
        def handler(request):
            return httpx.Response(200, text=soap_response("<row><name>Cisco 8845</name></row>"))

        async with make_client(handler) as client:
            records, token = await client.list("phone_models")

        assert records == [{"name": "Cisco 8845"}]
        assert token is None

    @pytest.mark.asyncio
    async def test_get_record(self):
        def handler(request):
            body = request_body(request)
            assert body["method"] == "getPhone"
            assert body["data"] == {"name": "SEP001122334455"}
            return httpx.Response(200, text=soap_response(
                '<phone uuid="{ABC}"><name>SEP001122334455</name><model>Cisco 8845</model></phone>',
                "getPhoneResponse",
            ))

        async with make_client(handler) as client:
            record = await client.get("phones", "SEP001122334455")

        assert record == {"name": "SEP001122334455", "model": "Cisco 8845", "uuid": "{ABC}"}

    @pytest.mark.asyncio
    async def test_get_unsupported_type(self):
        async with make_client(lambda request: httpx.Response(200)) as client:
            with pytest.raises(ValueError, match="no get operation"):
                await client.get("device_pools", "DP_HQ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_http_auth_failure(self, status):
        async with make_client(lambda request: httpx.Response(status, text="Unauthorized")) as client:
            with pytest.raises(AxlAuthError):
                await client.get_version()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 502, 503, 504])
    async def test_http_unavailable_is_transient(self, status):
        async with make_client(lambda request: httpx.Response(status)) as client:
            with pytest.raises(AxlTransientError):
                await client.get_version()

    @pytest.mark.asyncio
    async def test_server_error_without_fault_is_transient(self):
        async with make_client(lambda request: httpx.Response(500, text="<html>Internal error")) as client:
            with pytest.raises(AxlTransientError):
                await client.get_version()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(AxlTransientError, match="Timeout"):
                await client.get_version()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(AxlTransientError, match="Network error"):
                await client.get_version()

    @pytest.mark.asyncio
    async def test_authentication_fault(self):
        async with make_client(lambda request: httpx.Response(500, text=soap_fault("Authentication failed"))) as client:
            with pytest.raises(AxlAuthError):
                await client.get_version()

    @pytest.mark.asyncio
    async def test_other_fault_is_fatal_for_the_call(self):
        fault = soap_fault("Item not valid: The specified Phone was not found")
        async with make_client(lambda request: httpx.Response(500, text=fault)) as client:
            with pytest.raises(AxlResponseError, match="not found"):
                await client.get("phones", "SEP000000000000")

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        async with make_client(lambda request: httpx.Response(200, text="not xml")) as client:
            with pytest.raises(AxlResponseError, match="Malformed"):
                await client.get_version()
