"""
Catalog data models.

Defines CatalogEntry, Classification, ServiceRecord, EntitySchema and
SearchResult for service discovery.

## Lifecycle

- CatalogEntry: created once when the catalog is discovered, never mutated
- Classification: computed once per CatalogEntry, never mutated
- ServiceRecord: CatalogEntry + Classification + lazily populated schema.
  The schema starts absent and is set by the metadata cache at most once
  unless the cache entry is explicitly invalidated.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Lower score = higher business priority
PRIORITY_SERVICE_SCORE = 1
TIER_1_SCORE = 10
TIER_2_SCORE = 20
TIER_3_SCORE = 30
UNCLASSIFIED_SCORE = 100

TIER_SCORES = {1: TIER_1_SCORE, 2: TIER_2_SCORE, 3: TIER_3_SCORE}


@dataclass(frozen=True)
class CatalogEntry:
    """
    Minimal descriptor of an upstream data service.

    Only id, title and description are interpreted; the paths are
    opaque endpoint locations handed back to the gateway.
    """

    id: str  # "ZFAR_CUSTOMER_LINE_ITEMS_0001"
    title: str
    description: str
    service_path: str = ""  # "/sap/opu/odata/sap/ZFAR_CUSTOMER_LINE_ITEMS_0001/"
    metadata_path: str = ""  # service_path + "$metadata"
    version: str = "0001"


@dataclass(frozen=True)
class Classification:
    """
    Domain and tier tag for a catalog entry.

    Invariants:
    - tier is 0 (unclassified) through 3
    - domain is None exactly when tier is 0
    """

    domain: Optional[str]
    tier: int
    priority_score: int
    is_priority_service: bool = False

    @classmethod
    def unclassified(cls) -> "Classification":
        return cls(domain=None, tier=0, priority_score=UNCLASSIFIED_SCORE)


@dataclass(frozen=True)
class PropertySchema:
    name: str
    type: str
    nullable: bool = True
    max_length: Optional[str] = None


@dataclass(frozen=True)
class EntityCapabilities:
    creatable: bool = False
    updatable: bool = False
    deletable: bool = False


@dataclass(frozen=True)
class EntitySchema:
    """
    Parsed schema of a single entity type.

    keys preserves the declared order of the key property refs; composite
    keys are serialized in that order.
    """

    entity_name: str
    entity_set: Optional[str]
    keys: tuple[str, ...] = ()
    properties: tuple[PropertySchema, ...] = ()
    capabilities: EntityCapabilities = field(default_factory=EntityCapabilities)
    namespace: str = ""

    def property_names(self) -> list[str]:
        return [prop.name for prop in self.properties]


@dataclass
class ServiceRecord:
    """
    A catalog entry together with its classification and optional schema.

    Exactly one Classification per record; domain may be absent.
    """

    entry: CatalogEntry
    classification: Classification
    schema: Optional[tuple[EntitySchema, ...]] = None

    @property
    def service_id(self) -> str:
        return self.entry.id

    @property
    def domain(self) -> Optional[str]:
        return self.classification.domain

    @property
    def tier(self) -> int:
        return self.classification.tier

    @property
    def has_schema(self) -> bool:
        return self.schema is not None


class SearchSource(str, Enum):
    """Which search stage produced a result list."""

    SEMANTIC = "semantic"
    LEXICAL = "lexical"
    FALLBACK_ALL = "fallback-all"


@dataclass
class SearchResult:
    """
    Ranked candidate returned by the search engine (no schema).

    This is what Stage 1 returns - identifiers and provenance only.
    Field-level schema is only available from Stage 2.
    """

    service_id: str
    score: float
    match_reason: str
    source: SearchSource
    record: ServiceRecord = field(repr=False, compare=False)

    def priority_key(self) -> tuple[int, int, int, float]:
        """
        Business-priority sort key.

        priority service < tier 1 < tier 2 < tier 3 < unclassified,
        then ascending priority score, then descending search score.
        """
        classification = self.record.classification
        tier = classification.tier if classification.tier > 0 else 99
        return (
            0 if classification.is_priority_service else 1,
            tier,
            classification.priority_score,
            -self.score,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceId": self.service_id,
            "score": round(self.score, 4),
            "matchReason": self.match_reason,
            "source": self.source.value,
        }
