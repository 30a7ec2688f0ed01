"""Catalog MCP Server - progressive discovery over enterprise data service catalogs."""

__version__ = "0.1.0"

from .errors import (
    CapabilityError,
    CatalogError,
    ConfigurationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "CapabilityError",
    "CatalogError",
    "ConfigurationError",
    "NotFoundError",
    "UpstreamError",
    "ValidationError",
    "__version__",
]
