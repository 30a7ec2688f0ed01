"""
Domain rule sets and service hints loaded from YAML.

Rules are compiled once at startup into immutable objects and injected
into the classifier and search components. A malformed pattern is a
fatal ConfigurationError naming the domain and the pattern.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml
from loguru import logger

from ..errors import ConfigurationError

TIER_KEYWORD_FIELDS = ("tier1_keywords", "tier2_keywords", "tier3_keywords")


@dataclass(frozen=True)
class DomainRule:
    """
    Classification rule set for one business domain.

    include: patterns matched against the service id or the title
    exclude: patterns matched against the service id; a match skips the domain
    tier_keywords: tier 1, tier 2 and tier 3 pattern groups, in that order
    priority_services: upper-cased ids always classified as tier 1, score 1
    """

    name: str
    display_name: str
    expansion: str
    include: tuple[re.Pattern, ...]
    exclude: tuple[re.Pattern, ...] = ()
    tier_keywords: tuple[tuple[re.Pattern, ...], ...] = ((), (), ())
    priority_services: frozenset = field(default_factory=frozenset)


@dataclass(frozen=True)
class ServiceHint:
    """Curated label/description override used to bias ranking."""

    label: str
    use_for: str
    entities: tuple[str, ...] = ()
    tcode: Optional[str] = None


@dataclass(frozen=True)
class ClassifierConfig:
    """Ordered domain rules plus hints keyed by upper-cased service id."""

    domains: tuple[DomainRule, ...]
    hints: Mapping[str, ServiceHint] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def hint_for(self, service_id: str) -> Optional[ServiceHint]:
        """Case-insensitive hint lookup."""
        return self.hints.get(service_id.upper())

    def domain(self, name: Optional[str]) -> Optional[DomainRule]:
        if not name:
            return None
        for rule in self.domains:
            if rule.name == name:
                return rule
        return None

    @classmethod
    def from_dict(cls, data: Any) -> "ClassifierConfig":
        """
        Build config from parsed YAML.

        Raises:
            ConfigurationError: If structure or any pattern is invalid
        """
        if not isinstance(data, dict):
            raise ConfigurationError(
                None, None, f"expected mapping, got {type(data).__name__}"
            )

        domains_data = data.get("domains", [])
        if not isinstance(domains_data, list):
            raise ConfigurationError(None, None, "'domains' must be a list")

        domains = []
        seen: set[str] = set()
        for domain_data in domains_data:
            rule = _build_domain(domain_data)
            if rule.name in seen:
                raise ConfigurationError(rule.name, None, "duplicate domain name")
            seen.add(rule.name)
            domains.append(rule)

        hints_data = data.get("hints", {}) or {}
        if not isinstance(hints_data, dict):
            raise ConfigurationError(None, None, "'hints' must be a mapping")

        hints = {}
        for service_id, hint_data in hints_data.items():
            if not isinstance(hint_data, dict) or "label" not in hint_data:
                raise ConfigurationError(
                    None, None, f"hint for '{service_id}' must define a label"
                )
            hints[str(service_id).upper()] = ServiceHint(
                label=hint_data["label"],
                use_for=hint_data.get("use_for", ""),
                entities=tuple(hint_data.get("entities") or ()),
                tcode=hint_data.get("tcode"),
            )

        return cls(domains=tuple(domains), hints=MappingProxyType(hints))


def _compile(domain: str, patterns: Any) -> tuple[re.Pattern, ...]:
    if patterns is None:
        return ()
    if not isinstance(patterns, list):
        raise ConfigurationError(domain, None, "pattern groups must be lists")

    compiled = []
    for pattern in patterns:
        if not isinstance(pattern, str):
            raise ConfigurationError(domain, repr(pattern), "pattern must be a string")
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise ConfigurationError(domain, pattern, str(e)) from e
    return tuple(compiled)


def _build_domain(data: Any) -> DomainRule:
    if not isinstance(data, dict) or not data.get("name"):
        raise ConfigurationError(None, None, "every domain needs a name")

    name = str(data["name"])
    include = _compile(name, data.get("include"))
    if not include:
        raise ConfigurationError(name, None, "at least one include pattern is required")

    return DomainRule(
        name=name,
        display_name=data.get("display_name", name),
        expansion=data.get("expansion", data.get("display_name", name)),
        include=include,
        exclude=_compile(name, data.get("exclude")),
        tier_keywords=tuple(_compile(name, data.get(key)) for key in TIER_KEYWORD_FIELDS),
        priority_services=frozenset(
            str(service_id).upper() for service_id in data.get("priority_services") or ()
        ),
    )


def load_classifier_config(yaml_path: str) -> ClassifierConfig:
    """
    Load classifier rules and hints from a YAML file.

    Args:
        yaml_path: Path to domains.yaml

    Returns:
        Immutable ClassifierConfig

    Raises:
        FileNotFoundError: If the YAML file doesn't exist
        ConfigurationError: If the YAML or a pattern is malformed
    """
    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Domain config YAML not found: {yaml_path}")

    with open(yaml_file) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(None, None, f"malformed YAML: {e}") from e

    config = ClassifierConfig.from_dict(data)
    logger.info(
        f"Loaded {len(config.domains)} domain rule sets "
        f"({', '.join(rule.name for rule in config.domains)}) and {len(config.hints)} hints"
    )
    return config
