"""
Embedding document synthesis for services and entities.

A service document is built from the catalog entry, its classification
and any curated hint. Once a service schema is cached, per-entity
documents add key fields, business fields and capabilities.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..classification import Classifier, ServiceHint, tier_semantic_label
from ..registry.models import EntitySchema, ServiceRecord

ENTITY_KEY_SEPARATOR = "::"

# Non-business entities: value helps, interfaces, system, parameters, internal, draft admin
SKIP_ENTITY_PATTERNS = [
    re.compile(r"^VL_"),
    re.compile(r"^I_"),
    re.compile(r"^SAP__"),
    re.compile(r"^P_"),
    re.compile(r"Parameters$"),
    re.compile(r"^_"),
    re.compile(r"DraftAdministrativeData"),
]

# Technical fields: system prefixes, internal, audit, GUIDs
SKIP_PROPERTY_PATTERNS = [
    re.compile(r"^SAP__"),
    re.compile(r"^_"),
    re.compile(r"LastChanged", re.IGNORECASE),
    re.compile(r"CreatedBy", re.IGNORECASE),
    re.compile(r"ModifiedBy", re.IGNORECASE),
    re.compile(r"^UUID$", re.IGNORECASE),
    re.compile(r"^GUID$", re.IGNORECASE),
    re.compile(r"^ETag$", re.IGNORECASE),
    re.compile(r"DraftUUID", re.IGNORECASE),
]

MAX_SAMPLE_PROPERTIES = 10


@dataclass(frozen=True)
class IndexCandidate:
    """A document waiting to be embedded."""

    key: str  # service id, or "<service id>::<entity name>"
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


def entity_key(service_id: str, entity_name: str) -> str:
    return f"{service_id}{ENTITY_KEY_SEPARATOR}{entity_name}"


def should_skip_entity(entity_name: str) -> bool:
    return any(pattern.search(entity_name) for pattern in SKIP_ENTITY_PATTERNS)


def is_business_relevant_property(property_name: str) -> bool:
    return not any(pattern.search(property_name) for pattern in SKIP_PROPERTY_PATTERNS)


def business_properties(entity: EntitySchema, limit: int) -> list[str]:
    """Non-key, business-relevant property names, in declared order."""
    keys = set(entity.keys)
    names = [
        prop.name
        for prop in entity.properties
        if prop.name not in keys and is_business_relevant_property(prop.name)
    ]
    return names[:limit]


def build_service_document(
    record: ServiceRecord, hint: Optional[ServiceHint], classifier: Classifier
) -> IndexCandidate:
    """
    Build the service-level document from catalog data and hints.

    Works without schema: catalog entry + classification + hint only.
    """
    entry = record.entry
    label = hint.label if hint else entry.title
    description = hint.use_for if hint and hint.use_for else entry.description
    domain = record.domain or "General"
    expansion = classifier.domain_expansion(record.domain)

    lines = [
        f"Data Service: {label}",
        f"Service ID: {entry.id}",
        f"Description: {description}",
        f"Domain: {domain} {expansion}".rstrip(),
        f"Tier: {tier_semantic_label(record.tier)}",
    ]
    if hint and hint.tcode:
        lines.append(f"Transaction: {hint.tcode}")
    if hint and hint.entities:
        lines.append(f"Key Entities: {', '.join(hint.entities)}")

    text = "\n".join(lines)
    return IndexCandidate(
        key=entry.id,
        text=text,
        metadata={
            "serviceId": entry.id,
            "serviceName": label,
            "serviceDescription": description,
            "entityName": None,
            "entitySet": None,
            "keyProperties": [],
            "sampleProperties": list(hint.entities) if hint else [],
            "domain": domain,
            "embeddingDocument": text,
        },
    )


def build_entity_documents(
    record: ServiceRecord,
    classifier: Classifier,
    max_properties: int = 15,
) -> list[IndexCandidate]:
    """
    Build one document per business entity of a service with cached schema.

    Entities matching SKIP_ENTITY_PATTERNS are skipped entirely.
    """
    if not record.schema:
        return []

    entry = record.entry
    domain = record.domain or "General"
    domain_text = f"{domain} {classifier.domain_expansion(record.domain)}".rstrip()
    candidates = []

    for entity in record.schema:
        if should_skip_entity(entity.entity_name):
            continue

        relevant = business_properties(entity, max_properties)
        capabilities = entity.capabilities
        capability_words = [
            word
            for word, enabled in (
                ("Create", capabilities.creatable),
                ("Update", capabilities.updatable),
                ("Delete", capabilities.deletable),
            )
            if enabled
        ]
        capability_words.append("Read")

        text = "\n".join(
            [
                f"Data Service: {entry.title}",
                f"Service Description: {entry.description}",
                f"Entity: {entity.entity_name}",
                f"Entity Set: {entity.entity_set or entity.entity_name}",
                f"Key Fields: {', '.join(entity.keys)}",
                f"Business Fields: {', '.join(relevant)}",
                f"Domain: {domain_text}",
                f"Capabilities: {' '.join(capability_words)}",
            ]
        )
        candidates.append(
            IndexCandidate(
                key=entity_key(entry.id, entity.entity_name),
                text=text,
                metadata={
                    "serviceId": entry.id,
                    "serviceName": entry.title,
                    "serviceDescription": entry.description,
                    "entityName": entity.entity_name,
                    "entitySet": entity.entity_set,
                    "keyProperties": list(entity.keys),
                    "sampleProperties": relevant[:MAX_SAMPLE_PROPERTIES],
                    "domain": domain,
                    "embeddingDocument": text,
                },
            )
        )

    return candidates
