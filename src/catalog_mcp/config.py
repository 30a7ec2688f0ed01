"""Centralized configuration for the catalog discovery server."""

import os
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Catalog server configuration with environment variable overrides.

    All configuration values are centralized here with sensible defaults.
    Values can be overridden via environment variables.

    Classifier rules and service hints live in the YAML file named by
    DOMAIN_CONFIG_PATH; they are loaded once at startup and injected,
    never read through this class.
    """

    @staticmethod
    def _parse_port(port_str: str) -> int:
        """Parse and validate port number from string."""
        try:
            port = int(port_str)
            if not (1 <= port <= 65535):
                raise ValueError(f"Port must be 1-65535, got {port}")
            return port
        except ValueError as e:
            raise ValueError(f"Invalid PORT environment variable: {e}")

    # ========================================================================
    # Server Configuration
    # ========================================================================
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = _parse_port.__func__(os.getenv("PORT", "8001"))
    TRANSPORT: str = os.getenv("TRANSPORT", "stdio")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "")

    # ========================================================================
    # Classifier Rules
    # ========================================================================
    DOMAIN_CONFIG_PATH: str = os.getenv("DOMAIN_CONFIG_PATH") or str(
        Path(__file__).parent.parent.parent / "config" / "domains.yaml"
    )
    DROP_EXCLUDED_SERVICES: bool = _env_bool("DROP_EXCLUDED_SERVICES", "true")

    # ========================================================================
    # Upstream OData Gateway
    # ========================================================================
    UPSTREAM_BASE_URL: str = os.getenv("UPSTREAM_BASE_URL", "http://localhost:8000")
    UPSTREAM_CATALOG_PATH: str = os.getenv(
        "UPSTREAM_CATALOG_PATH",
        "/sap/opu/odata/IWFND/CATALOGSERVICE;v=2/ServiceCollection",
    )
    UPSTREAM_AUTH_TOKEN: str = os.getenv("UPSTREAM_AUTH_TOKEN", "")
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "30"))

    # ========================================================================
    # Semantic Search
    # ========================================================================
    ENABLE_SEMANTIC_SEARCH: bool = _env_bool("ENABLE_SEMANTIC_SEARCH", "true")
    EMBEDDING_PROVIDER: str = os.getenv("EMBEDDING_PROVIDER", "sentence-transformers")
    EMBEDDING_MODEL: str = os.getenv(
        "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
    )
    EMBEDDING_MODEL_VERSION: str = os.getenv("EMBEDDING_MODEL_VERSION", "1.0")
    EMBEDDING_DIMENSION: int = int(os.getenv("EMBEDDING_DIMENSION", "384"))
    EMBEDDING_CACHE_PATH: str = os.getenv(
        "EMBEDDING_CACHE_PATH", ".cache/embeddings-cache.json"
    )
    SEMANTIC_MIN_SCORE: float = float(os.getenv("SEMANTIC_MIN_SCORE", "0.25"))
    SNAPSHOT_DRIFT_TOLERANCE: float = float(os.getenv("SNAPSHOT_DRIFT_TOLERANCE", "0.05"))
    MAX_BUSINESS_PROPERTIES: int = 15

    # ========================================================================
    # Search Limits
    # ========================================================================
    DEFAULT_SEARCH_LIMIT: int = int(os.getenv("DEFAULT_SEARCH_LIMIT", "20"))
    MAX_SEARCH_LIMIT: int = int(os.getenv("MAX_SEARCH_LIMIT", "100"))

    VALID_TRANSPORTS = ("stdio", "sse", "http")
    VALID_EMBEDDING_PROVIDERS = ("sentence-transformers", "hashing")

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Checks:
        - TRANSPORT and EMBEDDING_PROVIDER are known values
        - Score thresholds lie in [0, 1]
        - Limits, timeouts and dimensions are positive

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        if cls.TRANSPORT not in cls.VALID_TRANSPORTS:
            errors.append(
                f"TRANSPORT must be one of {', '.join(cls.VALID_TRANSPORTS)}, got '{cls.TRANSPORT}'"
            )

        if cls.EMBEDDING_PROVIDER not in cls.VALID_EMBEDDING_PROVIDERS:
            errors.append(
                "EMBEDDING_PROVIDER must be one of "
                f"{', '.join(cls.VALID_EMBEDDING_PROVIDERS)}, got '{cls.EMBEDDING_PROVIDER}'"
            )

        if not 0.0 <= cls.SEMANTIC_MIN_SCORE <= 1.0:
            errors.append(f"SEMANTIC_MIN_SCORE must be in [0, 1], got {cls.SEMANTIC_MIN_SCORE}")

        if not 0.0 <= cls.SNAPSHOT_DRIFT_TOLERANCE <= 1.0:
            errors.append(
                f"SNAPSHOT_DRIFT_TOLERANCE must be in [0, 1], got {cls.SNAPSHOT_DRIFT_TOLERANCE}"
            )

        if cls.REQUEST_TIMEOUT <= 0:
            errors.append(f"REQUEST_TIMEOUT must be > 0, got {cls.REQUEST_TIMEOUT}")

        if cls.EMBEDDING_DIMENSION <= 0:
            errors.append(f"EMBEDDING_DIMENSION must be > 0, got {cls.EMBEDDING_DIMENSION}")

        if cls.MAX_SEARCH_LIMIT <= 0:
            errors.append(f"MAX_SEARCH_LIMIT must be > 0, got {cls.MAX_SEARCH_LIMIT}")

        if not 0 < cls.DEFAULT_SEARCH_LIMIT <= cls.MAX_SEARCH_LIMIT:
            errors.append(
                f"DEFAULT_SEARCH_LIMIT must be in 1..{cls.MAX_SEARCH_LIMIT}, "
                f"got {cls.DEFAULT_SEARCH_LIMIT}"
            )

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
