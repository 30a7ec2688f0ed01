"""Pytest fixtures and test doubles for the catalog MCP test suite."""

import asyncio
from pathlib import Path
from typing import Any, Optional

import pytest

from catalog_mcp.classification import Classifier, load_classifier_config
from catalog_mcp.discovery import ProgressiveDiscovery
from catalog_mcp.errors import UpstreamError
from catalog_mcp.metadata import MetadataCache, SchemaProvider
from catalog_mcp.registry import (
    CatalogEntry,
    EntityCapabilities,
    EntitySchema,
    PropertySchema,
    ServiceRegistry,
)
from catalog_mcp.retrieval import (
    EmbeddingIndex,
    EmbeddingProvider,
    HashingEmbeddingProvider,
    HybridSearchEngine,
)

DOMAINS_YAML = Path(__file__).parent.parent / "config" / "domains.yaml"

LINE_ITEMS = "ZFAR_CUSTOMER_LINE_ITEMS_0001"
COLLECTIONS_EMAIL = "ZUI_COLLECTIONS_EMAIL_0001"
CORRESPONDENCE = "ZFAR_CORRESPONDENCE_HISTORY_SRV_0001"
AR_OVERVIEW = "ZFAR_AR_OVP_SRV_0001"
SD_INVOICES = "ZSD_CUSTOMER_INVOICES_MANAGE_0001"
RAR_CONTRACTS = "RAR_CONTRACT_MANAGE_0001"
BUSINESS_PARTNER = "API_BUSINESS_PARTNER"


def make_entry(service_id: str, title: str, description: str = "") -> CatalogEntry:
    path = f"/sap/opu/odata/sap/{service_id}/"
    return CatalogEntry(
        id=service_id,
        title=title,
        description=description or title,
        service_path=path,
        metadata_path=f"{path}$metadata",
    )


# ============================================================================
# TEST DOUBLES
# ============================================================================


class CountingProvider(HashingEmbeddingProvider):
    """Hashing provider that counts embed() calls."""

    def __init__(self, dimension: int = 64, model_version: str = "1"):
        super().__init__(dimension=dimension, model_version=model_version)
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        return await super().embed(text)


class UnavailableProvider(EmbeddingProvider):
    """Provider whose model can never be reached."""

    model_id = "unavailable-model"
    model_version = "1"

    async def warm_up(self) -> None:
        raise UpstreamError("embedding", self.model_id, "model not installed")

    async def embed(self, text: str) -> list[float]:
        raise UpstreamError("embedding", self.model_id, "model not installed")


class FakeSchemaProvider(SchemaProvider):
    """
    In-memory schema provider.

    calls counts fetches per service id. When gated, fetches block until
    release() is called. fail_next makes the next N fetches raise.
    """

    def __init__(self, schemas: dict[str, tuple[EntitySchema, ...]], gated: bool = False):
        self.schemas = schemas
        self.calls: dict[str, int] = {}
        self.fail_next = 0
        self._gate = asyncio.Event()
        if not gated:
            self._gate.set()

    def release(self) -> None:
        self._gate.set()

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def fetch_schema(self, entry: CatalogEntry) -> tuple[EntitySchema, ...]:
        self.calls[entry.id] = self.calls.get(entry.id, 0) + 1
        await self._gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("gateway unreachable")
        return self.schemas.get(entry.id, ())


class FakeGateway:
    """Records every gateway call; returns canned data."""

    def __init__(self):
        self.calls: list[tuple[Any, ...]] = []

    async def read_collection(self, service_path, entity_set, **options):
        self.calls.append(("read_collection", service_path, entity_set, options))
        return [{"Customer": "C001"}, {"Customer": "C002"}]

    async def read_single(self, service_path, entity_set, key_predicate, **options):
        self.calls.append(("read_single", service_path, entity_set, key_predicate, options))
        return {"Customer": "C001"}

    async def create(self, service_path, entity_set, data):
        self.calls.append(("create", service_path, entity_set, data))
        return dict(data)

    async def update(self, service_path, entity_set, key_predicate, data):
        self.calls.append(("update", service_path, entity_set, key_predicate, data))
        return None

    async def delete(self, service_path, entity_set, key_predicate):
        self.calls.append(("delete", service_path, entity_set, key_predicate))


# ============================================================================
# CLASSIFIER FIXTURES
# ============================================================================


@pytest.fixture(scope="session")
def classifier_config():
    """Shipped AR/SD/FI rules and hints."""
    return load_classifier_config(str(DOMAINS_YAML))


@pytest.fixture
def classifier(classifier_config):
    return Classifier(classifier_config)


# ============================================================================
# CATALOG FIXTURES
# ============================================================================


@pytest.fixture
def catalog_entries():
    """
    Small catalog covering every ranking band.

    LINE_ITEMS: AR priority | SD_INVOICES: SD priority
    COLLECTIONS_EMAIL: AR, no tier keyword (defaults to tier 1)
    CORRESPONDENCE: AR tier 2 | AR_OVERVIEW: AR tier 3
    RAR_CONTRACTS: excluded from AR | BUSINESS_PARTNER: unclassified
    """
    return [
        make_entry(LINE_ITEMS, "Customer Line Items", "Customer open and cleared items"),
        make_entry(COLLECTIONS_EMAIL, "Collections Email", "Collections correspondence"),
        make_entry(CORRESPONDENCE, "Correspondence History", "Account statements"),
        make_entry(AR_OVERVIEW, "AR Overview", "Receivables KPIs"),
        make_entry(SD_INVOICES, "Manage Customer Invoices", "Billing documents"),
        make_entry(RAR_CONTRACTS, "Revenue Contract Receivables", "Revenue accounting contracts"),
        make_entry(
            BUSINESS_PARTNER,
            "Business Partner",
            "Customer and supplier master data with email addresses",
        ),
    ]


@pytest.fixture
def registry(catalog_entries, classifier):
    return ServiceRegistry.from_catalog(catalog_entries, classifier, drop_excluded=True)


# ============================================================================
# SCHEMA FIXTURES
# ============================================================================


@pytest.fixture
def line_item_schema():
    """Schema of LINE_ITEMS: composite-key Item, single-key Customer, value help."""
    item = EntitySchema(
        entity_name="Item",
        entity_set="Items",
        keys=("CompanyCode", "AccountingDocument", "FiscalYear"),
        properties=(
            PropertySchema("CompanyCode", "Edm.String", nullable=False, max_length="4"),
            PropertySchema("AccountingDocument", "Edm.String", nullable=False, max_length="10"),
            PropertySchema("FiscalYear", "Edm.String", nullable=False, max_length="4"),
            PropertySchema("Customer", "Edm.String", max_length="10"),
            PropertySchema("AmountInCompanyCodeCurrency", "Edm.Decimal"),
            PropertySchema("PaymentBlockingReason", "Edm.String", max_length="1"),
            PropertySchema("LastChangedByUser", "Edm.String"),
            PropertySchema("SAP__Messages", "Edm.String"),
        ),
        capabilities=EntityCapabilities(creatable=False, updatable=True, deletable=False),
        namespace="ZFAR_CUSTOMER_LINE_ITEMS_SRV",
    )
    customer = EntitySchema(
        entity_name="Customer",
        entity_set="Customers",
        keys=("Customer",),
        properties=(
            PropertySchema("Customer", "Edm.String", nullable=False, max_length="10"),
            PropertySchema("CustomerName", "Edm.String", max_length="80"),
            PropertySchema("EmailAddress", "Edm.String", max_length="241"),
        ),
        capabilities=EntityCapabilities(creatable=True, updatable=True, deletable=True),
        namespace="ZFAR_CUSTOMER_LINE_ITEMS_SRV",
    )
    value_help = EntitySchema(
        entity_name="VL_SH_DEBIA",
        entity_set="VL_SH_DEBIA",
        keys=("KUNNR",),
        properties=(PropertySchema("KUNNR", "Edm.String"),),
        capabilities=EntityCapabilities(),
        namespace="ZFAR_CUSTOMER_LINE_ITEMS_SRV",
    )
    detached = EntitySchema(
        entity_name="ItemText",
        entity_set=None,
        keys=("TextId",),
        properties=(PropertySchema("TextId", "Edm.String"),),
        capabilities=EntityCapabilities(),
        namespace="ZFAR_CUSTOMER_LINE_ITEMS_SRV",
    )
    return (item, customer, value_help, detached)


@pytest.fixture
def schema_provider(line_item_schema):
    return FakeSchemaProvider({LINE_ITEMS: line_item_schema})


@pytest.fixture
def gateway():
    return FakeGateway()


# ============================================================================
# ENGINE FIXTURES
# ============================================================================


@pytest.fixture
def hashing_provider():
    return CountingProvider(dimension=256)


@pytest.fixture
def embedding_index(hashing_provider):
    """Empty in-memory index (no snapshot path)."""
    return EmbeddingIndex(hashing_provider)


@pytest.fixture
def lexical_engine(registry, classifier_config):
    """Search engine with no embedding index."""
    return HybridSearchEngine(registry, classifier_config, index=None)


def build_discovery(
    registry: ServiceRegistry,
    classifier: Classifier,
    schema_provider: SchemaProvider,
    gateway: Optional[FakeGateway] = None,
    index: Optional[EmbeddingIndex] = None,
) -> ProgressiveDiscovery:
    engine = HybridSearchEngine(registry, classifier.config, index=index)
    return ProgressiveDiscovery(
        registry=registry,
        classifier=classifier,
        engine=engine,
        cache=MetadataCache(registry, schema_provider),
        gateway=gateway,
        index=index,
    )


@pytest.fixture
def discovery(registry, classifier, schema_provider, gateway):
    """Discovery engine without semantic search."""
    return build_discovery(registry, classifier, schema_provider, gateway)
