"""
Three-stage progressive discovery over the service catalog.

Stage 1 - search:  identifiers, display names, domain/tier labels, provenance
Stage 2 - inspect: full schema of one entity (lazily fetched and cached)
Stage 3 - act:     read/create/update/delete through the gateway

The stages are advisory. Nothing stops a caller from going straight to
act(); each stage simply withholds what the next one needs.
"""

import asyncio
import re
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from .classification import Classifier, ClassifierConfig, tier_label
from .errors import CapabilityError, NotFoundError, UpstreamError, ValidationError
from .metadata import MetadataCache
from .registry import EntitySchema, ServiceRecord, ServiceRegistry
from .retrieval import (
    CorpusFingerprint,
    EmbeddingIndex,
    HybridSearchEngine,
    build_entity_documents,
    build_service_document,
)

VALID_OPERATIONS = ("read", "read-single", "create", "update", "delete")

# Mutating operation -> capability flag that must be set
REQUIRED_CAPABILITY = {
    "create": "creatable",
    "update": "updatable",
    "delete": "deletable",
}

SEARCH_NEXT_STEP = (
    "Call get_entity_metadata with serviceId and entityName to get the full schema. "
    "An unknown entityName returns the service's entity names."
)


# Edm type -> V2 literal suffix; integer types up to Int32 take none
NUMERIC_SUFFIXES = {
    "Edm.Byte": "",
    "Edm.SByte": "",
    "Edm.Int16": "",
    "Edm.Int32": "",
    "Edm.Int64": "L",
    "Edm.Decimal": "M",
    "Edm.Double": "d",
    "Edm.Single": "f",
}

# Edm type -> V2 literal prefix for quoted non-string values
PREFIXED_TYPES = {
    "Edm.Guid": "guid",
    "Edm.DateTime": "datetime",
    "Edm.DateTimeOffset": "datetimeoffset",
    "Edm.Time": "time",
    "Edm.Binary": "binary",
}

NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
INTEGER = re.compile(r"^[+-]?\d+$")


def _quote(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def format_key_literal(name: str, edm_type: Optional[str], value: Any) -> str:
    """
    Render a key value as an OData V2 literal of its declared type.

    Strings (and unknown types) are quoted with '' escaping, numbers are
    bare with the V2 type suffix, booleans are true/false, and guid,
    datetime, time and binary values carry their type prefix.

    Raises:
        ValidationError: Value cannot be a literal of the declared type
    """
    if edm_type == "Edm.Boolean":
        text = str(value).lower()
        if text not in ("true", "false"):
            raise ValidationError(f"Key field {name} must be a boolean, got {value!r}")
        return text

    if edm_type in NUMERIC_SUFFIXES:
        if isinstance(value, bool):
            raise ValidationError(f"Key field {name} must be numeric, got {value!r}")
        text = str(value).strip()
        pattern = NUMBER if NUMERIC_SUFFIXES[edm_type] in ("M", "d", "f") else INTEGER
        if not pattern.match(text):
            raise ValidationError(f"Key field {name} must be {edm_type}, got {value!r}")
        return text + NUMERIC_SUFFIXES[edm_type]

    if edm_type in PREFIXED_TYPES:
        if isinstance(value, datetime):
            value = value.strftime("%Y-%m-%dT%H:%M:%S")
        return PREFIXED_TYPES[edm_type] + _quote(value)

    return _quote(value)


def build_key_predicate(entity: EntitySchema, parameters: dict[str, Any]) -> str:
    """
    Compose the key predicate from the entity's declared keys.

    Single key: <literal>, e.g. 'C001' or 5
    Composite key: Key1=<literal>,Key2=<literal> (declared key order)

    Literals follow each key property's Edm type (see format_key_literal).

    Raises:
        ValidationError: Listing every key field absent from parameters,
            or naming a value that does not fit its key type
    """
    if not entity.keys:
        raise ValidationError(f"Entity '{entity.entity_name}' declares no key properties")

    missing = [key for key in entity.keys if parameters.get(key) is None]
    if missing:
        raise ValidationError(
            f"Missing key field(s) for {entity.entity_name}: {', '.join(missing)}",
            missing=missing,
        )

    types = {prop.name: prop.type for prop in entity.properties}
    literals = [format_key_literal(key, types.get(key), parameters[key]) for key in entity.keys]

    if len(literals) == 1:
        return literals[0]
    return ",".join(f"{key}={literal}" for key, literal in zip(entity.keys, literals))


class ProgressiveDiscovery:
    """
    Search -> inspect -> act over a classified catalog.

    Features:
    - Stage 1 never returns field-level schema or data rows
    - Stage 2 errors list the service's real entity names
    - Stage 3 checks capability flags before any upstream call
    - Entity-level documents replace the service document once a schema is cached
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        classifier: Classifier,
        engine: HybridSearchEngine,
        cache: MetadataCache,
        gateway: Optional[Any] = None,
        index: Optional[EmbeddingIndex] = None,
        max_business_properties: int = 15,
        index_entities: bool = True,
    ):
        self.registry = registry
        self.classifier = classifier
        self.engine = engine
        self.cache = cache
        self.gateway = gateway
        self.index = index
        self.max_business_properties = max_business_properties
        self.index_entities = index_entities
        self._entity_indexed: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def config(self) -> ClassifierConfig:
        return self.classifier.config

    def display_name(self, record: ServiceRecord) -> str:
        hint = self.config.hint_for(record.service_id)
        return hint.label if hint else record.entry.title

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def build_index(self, force: bool = False) -> Optional[str]:
        """
        Build (or reload) the service-level embedding index.

        Returns:
            How the index was obtained, or None if semantic search is unavailable
        """
        if self.index is None:
            return None

        try:
            await self.index.provider.warm_up()
        except UpstreamError as e:
            logger.warning(f"Embedding provider unavailable, search will be lexical only: {e}")
            return None

        records = self.registry.all()
        candidates = [
            build_service_document(record, self.config.hint_for(record.service_id), self.classifier)
            for record in records
        ]
        outcome = await self.index.build(
            candidates, CorpusFingerprint.from_records(records), force=force
        )
        logger.info(f"Embedding index ready ({len(self.index)} documents, {outcome})")
        return outcome

    async def index_service_entities(self, record: ServiceRecord) -> int:
        """
        Replace a service's document with its entity-level documents.

        The service document is kept when every entity is stoplisted. The
        snapshot is saved afterwards so entity documents survive a restart.
        """
        if self.index is None or not self.index.is_ready or not record.schema:
            return 0
        if record.service_id in self._entity_indexed:
            return 0
        self._entity_indexed.add(record.service_id)

        candidates = [
            candidate
            for candidate in build_entity_documents(
                record, self.classifier, self.max_business_properties
            )
            if candidate.key not in self.index
        ]
        if not candidates:
            return 0
        indexed = await self.index.index_all(
            candidates, replace=False, drop=[record.service_id]
        )
        if indexed:
            self.index.save_snapshot(CorpusFingerprint.from_records(self.registry.all()))
        return indexed

    def _schedule_entity_indexing(self, record: ServiceRecord) -> None:
        if not self.index_entities or record.service_id in self._entity_indexed:
            return
        task = asyncio.create_task(self.index_service_entities(record))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Entity indexing failed: {task.exception()}")

    async def wait_for_background(self) -> None:
        """Wait for pending entity indexing tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Stage 1 - search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: Optional[str] = None,
        domain: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Find candidate services.

        Returns identifiers and classification only; never schema or data.
        """
        outcome = await self.engine.search(query=query, domain=domain, limit=limit)

        results = []
        for result in outcome.results:
            record = result.record
            results.append(
                {
                    "serviceId": result.service_id,
                    "displayName": self.display_name(record),
                    "domain": record.domain,
                    "domainName": self.classifier.domain_display_name(record.domain),
                    "tier": record.tier,
                    "tierLabel": tier_label(record.tier),
                    "isPriority": record.classification.is_priority_service,
                    "matchReason": result.match_reason,
                    "score": round(result.score, 4),
                }
            )

        return {
            "query": outcome.query or "(all)",
            "domain": outcome.domain or "ALL",
            "source": outcome.source.value,
            "totalFound": outcome.total_found,
            "showing": len(results),
            "results": results,
            "next": SEARCH_NEXT_STEP,
        }

    # ------------------------------------------------------------------
    # Stage 2 - inspect
    # ------------------------------------------------------------------

    async def _resolve_entity(
        self, service_id: str, entity_name: str
    ) -> tuple[ServiceRecord, EntitySchema]:
        record = self.registry.require(service_id)
        schema = await self.cache.get(service_id)
        for entity in schema:
            if entity.entity_name == entity_name:
                return record, entity
        raise NotFoundError(
            "entity",
            entity_name,
            [entity.entity_name for entity in schema],
            scope=service_id,
        )

    async def inspect(self, service_id: str, entity_name: str) -> dict[str, Any]:
        """
        Full schema of one entity.

        Raises:
            NotFoundError: Unknown service, or unknown entity (lists real entity names)
            UpstreamError: Schema fetch failed
        """
        record, entity = await self._resolve_entity(service_id, entity_name)
        self._schedule_entity_indexing(record)

        keys = set(entity.keys)
        capabilities = entity.capabilities
        return {
            "service": {
                "id": record.service_id,
                "title": record.entry.title,
                "domain": record.domain,
                "tier": record.tier,
            },
            "entity": {
                "name": entity.entity_name,
                "entitySet": entity.entity_set,
                "namespace": entity.namespace,
                "keys": list(entity.keys),
                "propertyCount": len(entity.properties),
            },
            "capabilities": {
                "readable": entity.entity_set is not None,
                "creatable": capabilities.creatable,
                "updatable": capabilities.updatable,
                "deletable": capabilities.deletable,
            },
            "properties": [
                {
                    "name": prop.name,
                    "type": prop.type,
                    "nullable": prop.nullable,
                    "maxLength": prop.max_length,
                    "isKey": prop.name in keys,
                }
                for prop in entity.properties
            ],
            "next": (
                f"Call execute_operation with serviceId='{record.service_id}', "
                f"entityName='{entity.entity_name}' and operation one of: "
                f"{', '.join(VALID_OPERATIONS)}"
            ),
        }

    # ------------------------------------------------------------------
    # Stage 3 - act
    # ------------------------------------------------------------------

    async def act(
        self,
        service_id: str,
        entity_name: str,
        operation: str,
        parameters: Optional[dict[str, Any]] = None,
        filter: Optional[str] = None,
        select: Optional[str] = None,
        expand: Optional[str] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Execute an operation against one entity.

        Raises:
            ValidationError: Invalid operation or missing key fields
            NotFoundError: Unknown service or entity
            CapabilityError: Mutation not permitted (no upstream call is made)
            UpstreamError: Schema fetch or gateway call failed
        """
        op = (operation or "").strip().lower()
        if op not in VALID_OPERATIONS:
            raise ValidationError(f"Invalid operation '{operation}'", valid=list(VALID_OPERATIONS))

        record, entity = await self._resolve_entity(service_id, entity_name)
        parameters = dict(parameters or {})

        capability = REQUIRED_CAPABILITY.get(op)
        if capability and not getattr(entity.capabilities, capability):
            raise CapabilityError(record.service_id, entity.entity_name, capability)
        if entity.entity_set is None:
            raise CapabilityError(record.service_id, entity.entity_name, "addressable")

        if self.gateway is None:
            raise UpstreamError("gateway", record.service_id, "no gateway configured")

        path = record.entry.service_path
        entity_set = entity.entity_set

        if op == "read":
            description = f"Reading {entity.entity_name}"
            if top is not None:
                description += f" (top {top})"
            if filter:
                description += f" where {filter}"
            data = await self.gateway.read_collection(
                path,
                entity_set,
                filter=filter,
                select=select,
                expand=expand,
                orderby=orderby,
                top=top,
                skip=skip,
            )
        elif op == "read-single":
            predicate = build_key_predicate(entity, parameters)
            description = f"Reading single {entity.entity_name} with key: {predicate}"
            data = await self.gateway.read_single(
                path, entity_set, predicate, select=select, expand=expand
            )
        elif op == "create":
            description = f"Creating {entity.entity_name}"
            data = await self.gateway.create(path, entity_set, parameters)
        elif op == "update":
            predicate = build_key_predicate(entity, parameters)
            # Keys address the entity; they are never resubmitted as data
            payload = {name: value for name, value in parameters.items() if name not in entity.keys}
            description = f"Updating {entity.entity_name} with key: {predicate}"
            data = await self.gateway.update(path, entity_set, predicate, payload)
        else:
            predicate = build_key_predicate(entity, parameters)
            description = f"Deleting {entity.entity_name} with key: {predicate}"
            await self.gateway.delete(path, entity_set, predicate)
            data = {"success": True, "message": f"Deleted {entity.entity_name}: {predicate}"}

        logger.info(f"{record.service_id}: {description}")
        return {"status": "ok", "operation": op, "description": description, "data": data}

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def services_summary(self) -> dict[str, Any]:
        records = self.registry.all()
        by_domain: dict[str, int] = {}
        for record in records:
            domain = record.domain or "unclassified"
            by_domain[domain] = by_domain.get(domain, 0) + 1

        return {
            "totalServices": len(records),
            "byDomain": by_domain,
            "services": [
                {
                    "id": record.service_id,
                    "title": record.entry.title,
                    "domain": record.domain,
                    "tier": record.tier,
                    "isPriority": record.classification.is_priority_service,
                }
                for record in records
            ],
        }

    async def service_metadata_summary(self, service_id: str) -> dict[str, Any]:
        record = self.registry.require(service_id)
        schema = await self.cache.get(service_id)
        return {
            "service": {
                "id": record.service_id,
                "title": record.entry.title,
                "domain": record.domain,
                "tier": record.tier,
            },
            "entities": [
                {
                    "name": entity.entity_name,
                    "entitySet": entity.entity_set,
                    "keys": list(entity.keys),
                    "propertyCount": len(entity.properties),
                    "capabilities": {
                        "creatable": entity.capabilities.creatable,
                        "updatable": entity.capabilities.updatable,
                        "deletable": entity.capabilities.deletable,
                    },
                }
                for entity in schema
            ],
        }

    def system_instructions(self) -> str:
        domains = ", ".join(
            f"{name} ({self.classifier.domain_display_name(name)})"
            for name in self.classifier.configured_domains()
        )
        return f"""# Catalog MCP Server - Progressive Discovery

## Three Stages

### Stage 1: search_services
- Searches all {len(self.registry)} services
- Results ranked by business priority (priority services, then Tier 1 transactional first)
- Returns: serviceId, displayName, domain, tier, matchReason
- Domains: {domains or "none configured"}

### Stage 2: get_entity_metadata
- Full schema for one service entity, loaded on demand and cached
- Returns: properties, types, ordered keys, capabilities
- An unknown entityName returns the list of valid entity names

### Stage 3: execute_operation
- Operations: {", ".join(VALID_OPERATIONS)}
- Keyed operations (read-single, update, delete) need every key field in parameters
- Mutations are rejected when the entity's capabilities do not allow them

## Tiers

- **Tier 1 (Transactional)**: create/manage/post services
- **Tier 2 (Display)**: read-only services
- **Tier 3 (Analytics)**: dashboard and KPI services

## Tips

- Start with broad queries, then narrow down with a domain filter
- Check capabilities before create/update/delete
- Use $filter and $top to limit result size
- If a request with $select fails, retry without it
"""
