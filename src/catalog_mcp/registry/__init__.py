"""Service catalog records and registry."""

from .models import (
    CatalogEntry,
    Classification,
    EntityCapabilities,
    EntitySchema,
    PropertySchema,
    SearchResult,
    SearchSource,
    ServiceRecord,
)
from .registry import ServiceRegistry

__all__ = [
    "CatalogEntry",
    "Classification",
    "EntityCapabilities",
    "EntitySchema",
    "PropertySchema",
    "SearchResult",
    "SearchSource",
    "ServiceRecord",
    "ServiceRegistry",
]
