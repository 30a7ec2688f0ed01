"""
Lazy, single-flight cache of per-service entity schemas.

Each key maps to either a resolved schema or one in-flight fetch task
shared by every concurrent caller. A caller that gives up does not
cancel the fetch; the result still lands in the cache.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger

from ..errors import UpstreamError
from ..registry import CatalogEntry, EntitySchema, ServiceRegistry


class SchemaProvider(ABC):
    """Source of parsed entity schemas for a catalog entry."""

    @abstractmethod
    async def fetch_schema(self, entry: CatalogEntry) -> tuple[EntitySchema, ...]:
        """Fetch and parse the schema of one service."""


class MetadataCache:
    """
    Schema cache keyed by service id.

    Guarantees:
    - At most one upstream fetch per uncached key, however many callers
    - Failures are not cached; the next get() retries
    - invalidate() forces the next get() to fetch again
    """

    def __init__(self, registry: ServiceRegistry, provider: SchemaProvider):
        self.registry = registry
        self.provider = provider
        self._entries: dict[str, tuple[EntitySchema, ...]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._generations: dict[str, int] = {}
        self.fetch_count = 0
        self.hit_count = 0

    def is_cached(self, service_id: str) -> bool:
        return service_id in self._entries

    def peek(self, service_id: str) -> Optional[tuple[EntitySchema, ...]]:
        """Cached schema without triggering a fetch."""
        return self._entries.get(service_id)

    async def get(self, service_id: str) -> tuple[EntitySchema, ...]:
        """
        Get the schema of a service, fetching it on first use.

        Raises:
            NotFoundError: If the service id is not in the catalog
            UpstreamError: If the schema fetch or parse failed
        """
        record = self.registry.require(service_id)

        cached = self._entries.get(service_id)
        if cached is not None:
            self.hit_count += 1
            return cached

        task = self._inflight.get(service_id)
        if task is None:
            generation = self._generations.get(service_id, 0)
            task = asyncio.create_task(self._fetch(record.entry, generation))
            self._inflight[service_id] = task

        # shield: a cancelled caller must not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(self, entry: CatalogEntry, generation: int) -> tuple[EntitySchema, ...]:
        service_id = entry.id
        self.fetch_count += 1
        logger.info(f"Fetching metadata for {service_id}")

        try:
            try:
                schema = tuple(await self.provider.fetch_schema(entry))
            except Exception as e:
                logger.error(f"Metadata fetch failed for {service_id}: {e}")
                if isinstance(e, UpstreamError):
                    raise
                raise UpstreamError(
                    "schema", service_id, str(e), status=getattr(e, "status", None)
                ) from e

            # Result of a fetch that started before invalidate() is returned but not stored
            if self._generations.get(service_id, 0) == generation:
                self._entries[service_id] = schema
                record = self.registry.get(service_id)
                if record is not None:
                    record.schema = schema
            logger.info(f"Cached metadata for {service_id}: {len(schema)} entity types")
            return schema
        finally:
            if self._inflight.get(service_id) is asyncio.current_task():
                del self._inflight[service_id]

    def invalidate(self, service_id: str) -> bool:
        """
        Drop a cached schema so the next get() refetches it.

        Returns:
            True if an entry or in-flight fetch was dropped
        """
        self._generations[service_id] = self._generations.get(service_id, 0) + 1
        dropped = self._entries.pop(service_id, None) is not None
        dropped = self._inflight.pop(service_id, None) is not None or dropped

        record = self.registry.get(service_id)
        if record is not None:
            record.schema = None

        if dropped:
            logger.info(f"Invalidated metadata for {service_id}")
        return dropped

    def stats(self) -> dict[str, int]:
        return {
            "cached": len(self._entries),
            "inflight": len(self._inflight),
            "fetches": self.fetch_count,
            "hits": self.hit_count,
        }
