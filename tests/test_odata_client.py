"""
Tests for the httpx OData gateway client.

All requests go through httpx.MockTransport; nothing leaves the process.
"""

import json
from urllib.parse import unquote

import httpx
import pytest
from conftest import make_entry
from test_odata_parser import METADATA_XML

from catalog_mcp.errors import UpstreamError
from catalog_mcp.odata_client import ODataClient

BASE_URL = "https://gateway.example.com"
CATALOG_PATH = "/sap/opu/odata/IWFND/CATALOGSERVICE;v=2/ServiceCollection"
SERVICE_PATH = "/sap/opu/odata/sap/ZFAR_CUSTOMER_LINE_ITEMS_0001/"


class Recorder:
    """MockTransport handler that records requests and serves canned routes."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = unquote(request.url.path)
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"error": {"message": {"value": f"No route {path}"}}})
        return handler(request)


def make_client(routes, token="secret") -> tuple[ODataClient, Recorder]:
    recorder = Recorder(routes)
    client = ODataClient(
        base_url=BASE_URL,
        catalog_path=CATALOG_PATH,
        token=token,
        timeout=5,
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


@pytest.mark.asyncio
async def test_fetch_catalog():
    """Catalog entries parse with bearer auth and JSON accept headers."""
    body = {
        "d": {
            "results": [
                {
                    "ID": "ZFAR_CUSTOMER_LINE_ITEMS_0001",
                    "Title": "Customer Line Items",
                    "ServiceUrl": f"{BASE_URL}{SERVICE_PATH}",
                }
            ]
        }
    }
    client, recorder = make_client({("GET", CATALOG_PATH): lambda r: httpx.Response(200, json=body)})

    async with client:
        entries = await client.fetch_catalog()

    assert [entry.id for entry in entries] == ["ZFAR_CUSTOMER_LINE_ITEMS_0001"]
    assert entries[0].service_path == SERVICE_PATH
    request = recorder.requests[0]
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_fetch_catalog_http_error():
    """HTTP errors from the catalog carry provider and status."""
    client, _ = make_client({("GET", CATALOG_PATH): lambda r: httpx.Response(401, text="Unauthorized")})

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_catalog()

    assert exc_info.value.provider == "catalog"
    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_fetch_schema():
    """$metadata is requested as XML and parsed."""
    entry = make_entry("ZFAR_CUSTOMER_LINE_ITEMS_0001", "Customer Line Items")
    client, recorder = make_client(
        {("GET", f"{SERVICE_PATH}$metadata"): lambda r: httpx.Response(200, text=METADATA_XML)}
    )

    async with client:
        schema = await client.fetch_schema(entry)

    assert [entity.entity_name for entity in schema] == ["Item", "Customer", "ItemText"]
    assert recorder.requests[0].headers["Accept"] == "application/xml"


@pytest.mark.asyncio
async def test_fetch_schema_unparseable():
    """Unparseable metadata is a schema UpstreamError."""
    entry = make_entry("ZFAR_CUSTOMER_LINE_ITEMS_0001", "Customer Line Items")
    client, _ = make_client(
        {("GET", f"{SERVICE_PATH}$metadata"): lambda r: httpx.Response(200, text="<html>")}
    )

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_schema(entry)

    assert exc_info.value.provider == "schema"
    assert exc_info.value.key == entry.id


@pytest.mark.asyncio
async def test_read_collection_sends_query_options():
    """Only the query options given are sent."""
    body = {"d": {"results": [{"Customer": "C001"}], "__count": "1"}}
    client, recorder = make_client(
        {("GET", f"{SERVICE_PATH}Customers"): lambda r: httpx.Response(200, json=body)}
    )

    async with client:
        data = await client.read_collection(
            SERVICE_PATH, "Customers", filter="Customer eq 'C001'", top=10, select=None
        )

    assert data == [{"Customer": "C001"}]
    params = recorder.requests[0].url.params
    assert params["$filter"] == "Customer eq 'C001'"
    assert params["$top"] == "10"
    assert "$select" not in params


@pytest.mark.asyncio
async def test_read_single_addresses_key_predicate():
    """read_single addresses the entity by key predicate."""
    body = {"d": {"__metadata": {"type": "Customer"}, "Customer": "C001"}}
    path = f"{SERVICE_PATH}Customers('C001')"
    client, recorder = make_client({("GET", path): lambda r: httpx.Response(200, json=body)})

    async with client:
        data = await client.read_single(SERVICE_PATH, "Customers", "'C001'", select="Customer")

    assert data["Customer"] == "C001"
    assert recorder.requests[0].url.params["$select"] == "Customer"


@pytest.mark.asyncio
async def test_create_fetches_csrf_token_once():
    """The CSRF token is fetched once and reused."""
    def csrf(request):
        assert request.headers["x-csrf-token"] == "Fetch"
        return httpx.Response(200, headers={"x-csrf-token": "tok-1"}, json={"d": {}})

    def create(request):
        assert request.headers["x-csrf-token"] == "tok-1"
        return httpx.Response(201, json={"d": json.loads(request.content)})

    client, recorder = make_client(
        {("GET", SERVICE_PATH): csrf, ("POST", f"{SERVICE_PATH}Customers"): create}
    )

    async with client:
        first = await client.create(SERVICE_PATH, "Customers", {"Customer": "C003"})
        await client.create(SERVICE_PATH, "Customers", {"Customer": "C004"})

    assert first == {"Customer": "C003"}
    assert [request.method for request in recorder.requests] == ["GET", "POST", "POST"]


@pytest.mark.asyncio
async def test_expired_csrf_token_is_refetched_and_write_retried():
    """A 403 demanding a token drops the cached one, fetches a fresh one and retries."""
    issued = iter(["tok-1", "tok-2", "tok-3"])
    valid = {"token": None}

    def csrf(request):
        valid["token"] = next(issued)
        return httpx.Response(200, headers={"x-csrf-token": valid["token"]})

    def create(request):
        if request.headers.get("x-csrf-token") != valid["token"]:
            return httpx.Response(
                403,
                headers={"x-csrf-token": "Required"},
                text="CSRF token validation failed",
            )
        return httpx.Response(201, json={"d": json.loads(request.content)})

    client, recorder = make_client(
        {("GET", SERVICE_PATH): csrf, ("POST", f"{SERVICE_PATH}Customers"): create}
    )

    async with client:
        await client.create(SERVICE_PATH, "Customers", {"Customer": "C003"})
        valid["token"] = "expired-on-server"
        second = await client.create(SERVICE_PATH, "Customers", {"Customer": "C004"})
        third = await client.create(SERVICE_PATH, "Customers", {"Customer": "C005"})

    assert second == {"Customer": "C004"}
    assert third == {"Customer": "C005"}
    sent = [(r.method, r.headers.get("x-csrf-token")) for r in recorder.requests]
    assert sent == [
        ("GET", "Fetch"),
        ("POST", "tok-1"),
        ("POST", "tok-1"),
        ("GET", "Fetch"),
        ("POST", "tok-2"),
        ("POST", "tok-2"),
    ]


@pytest.mark.asyncio
async def test_csrf_retry_happens_once():
    """A write still rejected after a fresh token surfaces the 403."""

    def csrf(request):
        return httpx.Response(200, headers={"x-csrf-token": "tok"})

    def reject(request):
        return httpx.Response(
            403, headers={"x-csrf-token": "Required"}, text="CSRF token validation failed"
        )

    client, recorder = make_client(
        {("GET", SERVICE_PATH): csrf, ("DELETE", f"{SERVICE_PATH}Customers('C001')"): reject}
    )

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.delete(SERVICE_PATH, "Customers", "'C001'")

    assert exc_info.value.status == 403
    assert [request.method for request in recorder.requests] == ["GET", "DELETE", "GET", "DELETE"]


@pytest.mark.asyncio
async def test_plain_forbidden_is_not_retried():
    """A 403 without the token challenge is an authorization failure, not a stale token."""
    client, recorder = make_client(
        {
            ("GET", SERVICE_PATH): lambda r: httpx.Response(200, headers={"x-csrf-token": "tok"}),
            ("POST", f"{SERVICE_PATH}Customers"): lambda r: httpx.Response(403, text="Forbidden"),
        }
    )

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.create(SERVICE_PATH, "Customers", {"Customer": "C003"})

    assert exc_info.value.status == 403
    assert [request.method for request in recorder.requests] == ["GET", "POST"]


@pytest.mark.asyncio
async def test_update_and_delete():
    """Update sends PATCH with the payload; delete sends DELETE."""
    predicate = "CompanyCode='1000',AccountingDocument='1800000001',FiscalYear='2024'"
    item_path = f"{SERVICE_PATH}Items({predicate})"
    client, recorder = make_client(
        {
            ("GET", SERVICE_PATH): lambda r: httpx.Response(200, headers={"x-csrf-token": "t"}),
            ("PATCH", item_path): lambda r: httpx.Response(204),
            ("DELETE", item_path): lambda r: httpx.Response(204),
        }
    )

    async with client:
        assert await client.update(SERVICE_PATH, "Items", predicate, {"PaymentBlockingReason": "A"}) is None
        assert await client.delete(SERVICE_PATH, "Items", predicate) is None

    patch = recorder.requests[1]
    assert json.loads(patch.content) == {"PaymentBlockingReason": "A"}
    assert [request.method for request in recorder.requests] == ["GET", "PATCH", "DELETE"]


@pytest.mark.asyncio
async def test_not_found_carries_odata_message():
    """The OData error message ends up in the UpstreamError."""
    client, _ = make_client({})

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.read_collection(SERVICE_PATH, "Nothing")

    error = exc_info.value
    assert error.provider == "gateway"
    assert error.key == "Nothing"
    assert error.status == 404
    assert "No route" in error.message


@pytest.mark.asyncio
async def test_transport_error_is_upstream_error():
    """Connection failures become UpstreamError without status."""
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = ODataClient(
        base_url=BASE_URL,
        catalog_path=CATALOG_PATH,
        token="",
        transport=httpx.MockTransport(refuse),
    )

    async with client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_catalog()

    assert exc_info.value.status is None
    assert "ConnectError" in exc_info.value.message


@pytest.mark.asyncio
async def test_no_token_means_no_authorization_header():
    """No token, no Authorization header."""
    client, recorder = make_client(
        {("GET", CATALOG_PATH): lambda r: httpx.Response(200, json={"d": {"results": []}})},
        token="",
    )

    async with client:
        assert await client.fetch_catalog() == []

    assert "Authorization" not in recorder.requests[0].headers
