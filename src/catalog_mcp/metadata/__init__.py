"""Service schema parsing and caching."""

from .cache import MetadataCache, SchemaProvider
from .odata import parse_catalog, parse_metadata, service_base_path

__all__ = [
    "MetadataCache",
    "SchemaProvider",
    "parse_catalog",
    "parse_metadata",
    "service_base_path",
]
