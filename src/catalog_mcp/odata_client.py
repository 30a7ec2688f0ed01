"""
Async OData V2 gateway client.

Provides the three upstream collaborators of the discovery engine:
- catalog provider: fetch_catalog()
- schema provider: fetch_schema(entry)
- gateway: read_collection / read_single / create / update / delete

Usage:
    async with ODataClient(base_url="https://gateway.example.com") as client:
        entries = await client.fetch_catalog()
        schema = await client.fetch_schema(entries[0])
"""

from typing import Any, Optional

import httpx
from loguru import logger

from .config import Config
from .errors import UpstreamError
from .metadata import SchemaProvider, parse_catalog, parse_metadata
from .registry import CatalogEntry, EntitySchema

CSRF_HEADER = "x-csrf-token"


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of an OData error message."""
    try:
        error = response.json().get("error", {})
        message = error.get("message", "")
        if isinstance(message, dict):
            message = message.get("value", "")
        if message:
            return str(message)
    except (ValueError, AttributeError):
        pass
    return response.text[:500] or response.reason_phrase


def _unwrap(payload: Any) -> Any:
    """Strip the V2 {"d": ...} / {"d": {"results": [...]}} envelope."""
    if isinstance(payload, dict) and "d" in payload:
        payload = payload["d"]
        # Single entities carry __metadata; collections carry results (+ __count/__next)
        if (
            isinstance(payload, dict)
            and isinstance(payload.get("results"), list)
            and "__metadata" not in payload
        ):
            return payload["results"]
    return payload


class ODataClient(SchemaProvider):
    """
    httpx-based client for an OData V2 gateway.

    Attributes:
        base_url: Gateway origin; service paths are relative to it
        catalog_path: Path of the V2 catalog ServiceCollection
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        catalog_path: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Gateway origin (default Config.UPSTREAM_BASE_URL)
            catalog_path: Catalog collection path (default Config.UPSTREAM_CATALOG_PATH)
            token: Bearer token (default Config.UPSTREAM_AUTH_TOKEN)
            timeout: Request timeout in seconds (default Config.REQUEST_TIMEOUT)
            transport: Custom httpx transport, used by tests
        """
        self.base_url = (base_url or Config.UPSTREAM_BASE_URL).rstrip("/")
        self.catalog_path = catalog_path or Config.UPSTREAM_CATALOG_PATH
        self._token = token if token is not None else Config.UPSTREAM_AUTH_TOKEN
        self._csrf_tokens: dict[str, str] = {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or Config.REQUEST_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> "ODataClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        provider: str,
        key: str,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Send a request, mapping transport failures to UpstreamError."""
        logger.debug(f"{method} {url}")
        try:
            return await self._client.request(
                method, url, params=params, json=json, headers=self._headers(headers)
            )
        except httpx.HTTPError as e:
            raise UpstreamError(provider, key, f"{type(e).__name__}: {e}") from e

    @staticmethod
    def _raise_for_status(provider: str, key: str, response: httpx.Response) -> httpx.Response:
        if response.status_code >= 400:
            raise UpstreamError(
                provider,
                key,
                f"HTTP {response.status_code}: {_error_message(response)}",
                status=response.status_code,
            )
        return response

    async def _request(
        self,
        provider: str,
        key: str,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Send a request, mapping transport and HTTP failures to UpstreamError."""
        response = await self._send(
            provider, key, method, url, params=params, json=json, headers=headers
        )
        return self._raise_for_status(provider, key, response)

    # ------------------------------------------------------------------
    # Catalog and schema providers
    # ------------------------------------------------------------------

    async def fetch_catalog(self) -> list[CatalogEntry]:
        """Fetch the service catalog in declared order."""
        response = await self._request("catalog", self.catalog_path, "GET", self.catalog_path)
        try:
            entries = parse_catalog(response.json())
        except (ValueError, AttributeError) as e:
            raise UpstreamError("catalog", self.catalog_path, f"unreadable catalog: {e}") from e
        logger.info(f"Discovered {len(entries)} services from catalog")
        return entries

    async def fetch_schema(self, entry: CatalogEntry) -> tuple[EntitySchema, ...]:
        """Fetch and parse $metadata for one service."""
        metadata_path = entry.metadata_path or f"{entry.service_path}$metadata"
        response = await self._request(
            "schema", entry.id, "GET", metadata_path, headers={"Accept": "application/xml"}
        )
        try:
            return parse_metadata(response.text)
        except ValueError as e:
            raise UpstreamError("schema", entry.id, str(e)) from e

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    async def _csrf_headers(self, service_path: str) -> dict[str, str]:
        """CSRF token for write requests, cached per service path until rejected."""
        token = self._csrf_tokens.get(service_path)
        if token is None:
            response = await self._request(
                "gateway", service_path, "GET", service_path, headers={CSRF_HEADER: "Fetch"}
            )
            token = response.headers.get(CSRF_HEADER, "")
            self._csrf_tokens[service_path] = token
        return {CSRF_HEADER: token} if token else {}

    async def _write(
        self,
        service_path: str,
        key: str,
        method: str,
        url: str,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Send a modifying request with a CSRF token.

        A 403 answered with "x-csrf-token: Required" means the cached token
        expired; it is dropped, refetched and the request retried once.
        """
        headers = await self._csrf_headers(service_path)
        response = await self._send("gateway", key, method, url, json=json, headers=headers)

        if (
            response.status_code == 403
            and response.headers.get(CSRF_HEADER, "").lower() == "required"
        ):
            logger.info(f"CSRF token rejected for {service_path}, fetching a new one")
            self._csrf_tokens.pop(service_path, None)
            headers = await self._csrf_headers(service_path)
            response = await self._send("gateway", key, method, url, json=json, headers=headers)

        return self._raise_for_status("gateway", key, response)

    async def read_collection(
        self,
        service_path: str,
        entity_set: str,
        *,
        filter: Optional[str] = None,
        select: Optional[str] = None,
        expand: Optional[str] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> Any:
        options = {
            "$filter": filter,
            "$select": select,
            "$expand": expand,
            "$orderby": orderby,
            "$top": top,
            "$skip": skip,
        }
        params = {name: value for name, value in options.items() if value is not None}
        response = await self._request(
            "gateway", entity_set, "GET", f"{service_path}{entity_set}", params=params or None
        )
        return _unwrap(response.json())

    async def read_single(
        self,
        service_path: str,
        entity_set: str,
        key_predicate: str,
        *,
        select: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> Any:
        options = {"$select": select, "$expand": expand}
        params = {name: value for name, value in options.items() if value is not None}
        response = await self._request(
            "gateway",
            f"{entity_set}({key_predicate})",
            "GET",
            f"{service_path}{entity_set}({key_predicate})",
            params=params or None,
        )
        return _unwrap(response.json())

    async def create(self, service_path: str, entity_set: str, data: dict[str, Any]) -> Any:
        response = await self._write(
            service_path, entity_set, "POST", f"{service_path}{entity_set}", json=data
        )
        return _unwrap(response.json()) if response.content else None

    async def update(
        self, service_path: str, entity_set: str, key_predicate: str, data: dict[str, Any]
    ) -> Any:
        response = await self._write(
            service_path,
            f"{entity_set}({key_predicate})",
            "PATCH",
            f"{service_path}{entity_set}({key_predicate})",
            json=data,
        )
        return _unwrap(response.json()) if response.content else None

    async def delete(self, service_path: str, entity_set: str, key_predicate: str) -> None:
        await self._write(
            service_path,
            f"{entity_set}({key_predicate})",
            "DELETE",
            f"{service_path}{entity_set}({key_predicate})",
        )
