"""Main FastMCP server exposing progressive catalog discovery tools."""

import asyncio
import json
import sys
from contextlib import asynccontextmanager, suppress
from typing import Any, Awaitable, Callable, Optional

from fastmcp import FastMCP
from loguru import logger

from .classification import Classifier, load_classifier_config
from .config import Config
from .discovery import ProgressiveDiscovery
from .errors import CatalogError, UpstreamError
from .metadata import MetadataCache
from .odata_client import ODataClient
from .registry import CatalogEntry, ServiceRegistry
from .retrieval import EmbeddingIndex, HybridSearchEngine, create_embedding_provider

# Constants
SERVER_NAME = "CatalogSupervisor"
HOST = Config.HOST
PORT = Config.PORT

SELECT_TIP = "The request used select; if the gateway rejected it, retry without select."


# ============================================================================
# DISCOVERY STATE
# ============================================================================
# The discovery engine is built in the lifespan and held here. Tests inject
# a prebuilt engine with set_discovery(); the lifespan then leaves it alone.
# ============================================================================

_discovery: Optional[ProgressiveDiscovery] = None


def set_discovery(discovery: Optional[ProgressiveDiscovery]) -> None:
    global _discovery
    _discovery = discovery


def get_discovery() -> ProgressiveDiscovery:
    if _discovery is None:
        raise CatalogError(
            "Catalog server is not initialized",
            remediation="Wait for server startup to complete and retry.",
        )
    return _discovery


def build_discovery(
    entries: list[CatalogEntry],
    classifier: Classifier,
    client: ODataClient,
) -> ProgressiveDiscovery:
    """
    Assemble registry, index, search engine and cache from configuration.

    Args:
        entries: Catalog entries in declared order
        classifier: Classifier over the loaded rules
        client: OData client used as schema provider and gateway

    Returns:
        ProgressiveDiscovery ready to serve (index not built yet)
    """
    registry = ServiceRegistry.from_catalog(entries, classifier, Config.DROP_EXCLUDED_SERVICES)
    registry.log_stats()

    index = None
    if Config.ENABLE_SEMANTIC_SEARCH:
        index = EmbeddingIndex(
            create_embedding_provider(),
            snapshot_path=Config.EMBEDDING_CACHE_PATH,
            drift_tolerance=Config.SNAPSHOT_DRIFT_TOLERANCE,
        )

    engine = HybridSearchEngine(
        registry,
        classifier.config,
        index=index,
        semantic_min_score=Config.SEMANTIC_MIN_SCORE,
        semantic_enabled=Config.ENABLE_SEMANTIC_SEARCH,
        default_limit=Config.DEFAULT_SEARCH_LIMIT,
        max_limit=Config.MAX_SEARCH_LIMIT,
    )

    return ProgressiveDiscovery(
        registry=registry,
        classifier=classifier,
        engine=engine,
        cache=MetadataCache(registry, client),
        gateway=client,
        index=index,
        max_business_properties=Config.MAX_BUSINESS_PROPERTIES,
    )


async def _build_index(discovery: ProgressiveDiscovery) -> None:
    try:
        await discovery.build_index()
    except Exception:
        logger.exception("Embedding index build failed, search will be lexical only")


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app):
    """
    Server lifecycle manager (startup/shutdown).

    Startup:
    1. Configuration validation
    2. Classifier rules (ConfigurationError aborts startup)
    3. Catalog discovery (failure leaves an empty catalog)
    4. Registry, search engine and metadata cache assembly
    5. Embedding index build in the background

    Shutdown:
    - Cancel indexing, close the HTTP client
    """
    # STARTUP
    logger.info(f"Starting {SERVER_NAME} server...")

    if _discovery is not None:
        logger.info("Using preconfigured discovery engine")
        yield
        return

    Config.validate()

    # Rules are fatal on error: a bad pattern must not silently misclassify
    classifier = Classifier(load_classifier_config(Config.DOMAIN_CONFIG_PATH))

    client = ODataClient()
    try:
        entries = await client.fetch_catalog()
    except UpstreamError as e:
        logger.error(f"Catalog discovery failed: {e}. Starting with an empty catalog.")
        entries = []

    discovery = build_discovery(entries, classifier, client)
    set_discovery(discovery)

    index_task = asyncio.create_task(_build_index(discovery))

    logger.info(f"{SERVER_NAME} startup complete")
    logger.info(f"Transport: {Config.TRANSPORT}")
    logger.info(f"Semantic search: {'ENABLED' if Config.ENABLE_SEMANTIC_SEARCH else 'DISABLED'}")

    try:
        yield  # Server runs here
    finally:
        # SHUTDOWN
        logger.info(f"{SERVER_NAME} shutting down...")
        index_task.cancel()
        with suppress(asyncio.CancelledError):
            await index_task
        await client.aclose()
        set_discovery(None)


mcp = FastMCP(name=SERVER_NAME, lifespan=lifespan)


# ============================================================================
# OPERATION BOUNDARY
# ============================================================================

async def _call(
    operation: str,
    action: Callable[[ProgressiveDiscovery], Awaitable[Any]],
    select: Optional[str] = None,
) -> str:
    """
    Run a discovery operation and serialize its result.

    Every failure becomes {"status": "error", "error": {...}}; nothing
    escapes to crash the server.
    """
    try:
        result = await action(get_discovery())
    except CatalogError as e:
        logger.warning(f"{operation} failed: {e.message}")
        payload = e.to_payload()
        if select and isinstance(e, UpstreamError):
            existing = payload.get("remediation")
            payload["remediation"] = f"{existing} {SELECT_TIP}" if existing else SELECT_TIP
        result = {"status": "error", "error": payload}
    except Exception as e:
        logger.exception(f"Unexpected error in {operation}")
        result = {
            "status": "error",
            "error": {"code": "internal", "message": f"{type(e).__name__}: {e}"},
        }
    return json.dumps(result, indent=2, default=str)


# ============================================================================
# DISCOVERY TOOLS
# ============================================================================

@mcp.tool()
async def search_services(
    query: Optional[str] = None,
    domain: Optional[str] = None,
    limit: Optional[int] = None,
) -> str:
    """
    Stage 1: search the data service catalog.

    Returns identifiers, display names and domain/tier labels only. Results
    are ranked by business priority: priority services, then transactional,
    display and analytics tiers.

    Args:
        query: Free-text search; omit to list the catalog
        domain: Domain tag filter such as "AR" (default: all domains)
        limit: Maximum results (default 20, max 100)

    Returns:
        JSON with results, totalFound and the search source used
    """
    return await _call(
        "search_services",
        lambda discovery: discovery.search(query=query, domain=domain, limit=limit),
    )


@mcp.tool()
async def get_entity_metadata(service_id: str, entity_name: str) -> str:
    """
    Stage 2: full schema of one entity in a service.

    The service schema is fetched on first use and cached.

    Args:
        service_id: Service id from search_services
        entity_name: Entity type name; an unknown name returns the valid names

    Returns:
        JSON with ordered keys, properties and capability flags
    """
    return await _call(
        "get_entity_metadata",
        lambda discovery: discovery.inspect(service_id, entity_name),
    )


@mcp.tool()
async def execute_operation(
    service_id: str,
    entity_name: str,
    operation: str,
    parameters: Optional[dict[str, Any]] = None,
    filter: Optional[str] = None,
    select: Optional[str] = None,
    expand: Optional[str] = None,
    orderby: Optional[str] = None,
    top: Optional[int] = None,
    skip: Optional[int] = None,
) -> str:
    """
    Stage 3: read or modify entity data.

    Args:
        service_id: Service id from search_services
        entity_name: Entity name from get_entity_metadata
        operation: read | read-single | create | update | delete
        parameters: Key values for read-single/update/delete, payload for create/update
        filter: OData $filter (read)
        select: OData $select
        expand: OData $expand
        orderby: OData $orderby (read)
        top: OData $top (read)
        skip: OData $skip (read)

    Returns:
        JSON with status, description and data
    """
    return await _call(
        "execute_operation",
        lambda discovery: discovery.act(
            service_id,
            entity_name,
            operation,
            parameters=parameters,
            filter=filter,
            select=select,
            expand=expand,
            orderby=orderby,
            top=top,
            skip=skip,
        ),
        select=select,
    )


# ============================================================================
# RESOURCES
# ============================================================================

@mcp.resource("catalog://services", mime_type="application/json")
async def services_resource() -> str:
    """All discovered services with domain/tier classification."""

    async def summary(discovery: ProgressiveDiscovery) -> dict[str, Any]:
        return discovery.services_summary()

    return await _call("services_resource", summary)


@mcp.resource("catalog://service/{service_id}/metadata", mime_type="application/json")
async def service_metadata_resource(service_id: str) -> str:
    """Entity summaries of one service (schema fetched on demand)."""
    return await _call(
        "service_metadata_resource",
        lambda discovery: discovery.service_metadata_summary(service_id),
    )


@mcp.resource("catalog://system/instructions", mime_type="text/markdown")
def system_instructions_resource() -> str:
    """Usage guide for AI assistants."""
    try:
        return get_discovery().system_instructions()
    except CatalogError as e:
        return f"# Catalog MCP Server\n\n{e.message}\n"


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def configure_logging() -> None:
    """Loguru sinks: stderr always (stdout carries stdio transport), file when LOG_FILE is set."""
    logger.remove()  # Remove default handler

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>",
        level=Config.LOG_LEVEL,
    )

    if Config.LOG_FILE:
        logger.add(
            Config.LOG_FILE,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            level="DEBUG",
        )


def main():
    """
    Main entry point for the catalog server.

    Configures:
    - Loguru for structured logging
    - stdio, SSE or HTTP transport from Config.TRANSPORT
    """
    configure_logging()
    logger.info(f"Starting {SERVER_NAME}...")

    try:
        if Config.TRANSPORT == "stdio":
            mcp.run(transport="stdio")
        else:
            mcp.run(transport=Config.TRANSPORT, host=HOST, port=PORT)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
