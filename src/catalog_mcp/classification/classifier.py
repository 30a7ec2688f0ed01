"""
Rule-based domain and tier classification of catalog entries.

Domains are scanned in declaration order and the FIRST domain whose
include pattern matches wins. This is deliberately first-match, not
best-match: reordering domains in the YAML changes results.
"""

from typing import Iterable, Optional

from ..registry.models import (
    PRIORITY_SERVICE_SCORE,
    TIER_SCORES,
    Classification,
)
from .rules import ClassifierConfig, DomainRule

TIER_LABELS = {
    1: "Tier 1 (Transactional)",
    2: "Tier 2 (Display)",
    3: "Tier 3 (Analytics)",
}

# Phrases used in embedding documents
TIER_SEMANTIC_LABELS = {
    1: "Transactional CRUD operations",
    2: "Display read-only",
    3: "Analytics dashboard KPIs",
}


def _matches_any(value: str, patterns: Iterable) -> bool:
    return any(pattern.search(value) for pattern in patterns)


def tier_label(tier: Optional[int]) -> str:
    return TIER_LABELS.get(tier or 0, "Unclassified")


def tier_semantic_label(tier: Optional[int]) -> str:
    return TIER_SEMANTIC_LABELS.get(tier or 0, "General")


class Classifier:
    """
    Total, side-effect free classifier over an injected rule config.

    classify() never raises: every (id, title) pair yields a
    Classification, unclassified when no domain matches.
    """

    def __init__(self, config: ClassifierConfig):
        self.config = config

    def _determine_tier(self, service_id: str, title: str, rule: DomainRule) -> int:
        search_text = f"{service_id} {title}"
        for tier, patterns in enumerate(rule.tier_keywords, start=1):
            if _matches_any(search_text, patterns):
                return tier
        # Domain matched but no tier keyword did: assume transactional
        return 1

    def classify(self, service_id: str, title: str) -> Classification:
        """
        Classify a service by domain and tier.

        Args:
            service_id: Catalog identifier, e.g. 'ZFAR_CUSTOMER_LINE_ITEMS_0001'
            title: Catalog title, e.g. 'Customer Line Items'

        Returns:
            Classification with domain, tier, priority score and priority flag
        """
        service_id = service_id or ""
        title = title or ""
        upper_id = service_id.upper()

        for rule in self.config.domains:
            # Exclusion dominates inclusion
            if _matches_any(upper_id, rule.exclude):
                continue

            if not (_matches_any(upper_id, rule.include) or _matches_any(title, rule.include)):
                continue

            if upper_id in rule.priority_services:
                return Classification(
                    domain=rule.name,
                    tier=1,
                    priority_score=PRIORITY_SERVICE_SCORE,
                    is_priority_service=True,
                )

            tier = self._determine_tier(service_id, title, rule)
            return Classification(
                domain=rule.name,
                tier=tier,
                priority_score=TIER_SCORES[tier],
                is_priority_service=False,
            )

        return Classification.unclassified()

    def is_excluded(self, service_id: str) -> bool:
        """True if the id matches any domain's exclude patterns."""
        upper_id = (service_id or "").upper()
        return any(_matches_any(upper_id, rule.exclude) for rule in self.config.domains)

    def domain_display_name(self, domain: Optional[str]) -> str:
        if not domain:
            return "Unclassified"
        rule = self.config.domain(domain)
        return rule.display_name if rule else domain

    def domain_expansion(self, domain: Optional[str]) -> str:
        rule = self.config.domain(domain)
        return rule.expansion if rule else ""

    def configured_domains(self) -> list[str]:
        return [rule.name for rule in self.config.domains]

    def priority_services(self, domain: str) -> list[str]:
        rule = self.config.domain(domain)
        return sorted(rule.priority_services) if rule else []
