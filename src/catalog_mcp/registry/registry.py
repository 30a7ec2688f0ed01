"""Service registry implementation."""

import difflib
from typing import TYPE_CHECKING, Iterable, Optional

from loguru import logger

from ..errors import NotFoundError
from .models import CatalogEntry, ServiceRecord

if TYPE_CHECKING:
    from ..classification import Classifier

MAX_SUGGESTIONS = 5


class ServiceRegistry:
    """
    Classified catalog of upstream data services.

    Features:
    - Classification computed once per entry at load time
    - Optional removal of excluded false positives
    - Declared catalog order preserved
    - Per-domain tier statistics for startup logging
    """

    def __init__(self):
        """Initialize empty service registry."""
        self._services: dict[str, ServiceRecord] = {}

    @classmethod
    def from_catalog(
        cls,
        entries: Iterable[CatalogEntry],
        classifier: "Classifier",
        drop_excluded: bool = True,
    ) -> "ServiceRegistry":
        """
        Classify catalog entries and build the registry.

        Args:
            entries: Ordered catalog entries from the catalog provider
            classifier: Classifier over the loaded rule config
            drop_excluded: Remove entries matching any domain exclude pattern

        Returns:
            Initialized ServiceRegistry instance
        """
        registry = cls()
        dropped = 0

        for entry in entries:
            if drop_excluded and classifier.is_excluded(entry.id):
                dropped += 1
                continue
            if entry.id in registry._services:
                logger.warning(f"Duplicate catalog entry '{entry.id}' ignored")
                continue
            registry.add(
                ServiceRecord(entry=entry, classification=classifier.classify(entry.id, entry.title))
            )

        if dropped:
            logger.info(f"Dropped {dropped} excluded services from catalog")
        return registry

    def add(self, record: ServiceRecord) -> None:
        """
        Add a service record.

        Primarily used by test fixtures; production records come from
        from_catalog().
        """
        self._services[record.service_id] = record

    def is_registered(self, service_id: str) -> bool:
        return service_id in self._services

    def get(self, service_id: str) -> Optional[ServiceRecord]:
        return self._services.get(service_id)

    def require(self, service_id: str) -> ServiceRecord:
        """
        Get a service record or raise NotFoundError with close matches.

        Raises:
            NotFoundError: If the service id is not in the catalog
        """
        record = self._services.get(service_id)
        if record is not None:
            return record

        suggestions = difflib.get_close_matches(
            service_id, list(self._services), n=MAX_SUGGESTIONS, cutoff=0.5
        )
        if not suggestions:
            needle = (service_id or "").upper()
            suggestions = [sid for sid in self._services if needle and needle in sid.upper()]
            suggestions = suggestions[:MAX_SUGGESTIONS]
        raise NotFoundError("service", service_id, suggestions)

    def all(self) -> list[ServiceRecord]:
        """All records in catalog order."""
        return list(self._services.values())

    def by_domain(self, domain: Optional[str]) -> list[ServiceRecord]:
        """Records whose domain tag equals `domain` exactly."""
        return [record for record in self._services.values() if record.domain == domain]

    def stats(self) -> dict[str, dict[int, int]]:
        """Service counts per domain and tier."""
        stats: dict[str, dict[int, int]] = {}
        for record in self._services.values():
            domain = record.domain or "unclassified"
            tiers = stats.setdefault(domain, {})
            tiers[record.tier] = tiers.get(record.tier, 0) + 1
        return stats

    def log_stats(self) -> None:
        logger.info(f"Service catalog: {len(self)} total services")
        for domain, tiers in self.stats().items():
            tier_str = ", ".join(f"T{tier}:{count}" for tier, count in sorted(tiers.items()))
            logger.info(f"   {domain}: {tier_str}")

    def __len__(self) -> int:
        return len(self._services)
