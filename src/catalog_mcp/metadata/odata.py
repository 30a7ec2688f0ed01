"""
Parsers for OData V2 catalog and $metadata documents.

Element and attribute names are matched by local name, so EDMX/EDM
namespace versions do not matter.
"""

import xml.etree.ElementTree as ET
from typing import Any, Optional
from urllib.parse import urlparse

from ..registry.models import CatalogEntry, EntityCapabilities, EntitySchema, PropertySchema

ODATA_ROOT = "/sap/opu/odata/"


def _local(name: str) -> str:
    return name.rsplit("}", 1)[-1]


def _attr(element: ET.Element, name: str) -> Optional[str]:
    """Attribute by local name, ignoring its namespace prefix."""
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return None


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _flag(element: Optional[ET.Element], name: str) -> bool:
    # SAP annotations default to true unless explicitly "false"
    if element is None:
        return False
    return _attr(element, name) != "false"


def service_base_path(service_url: str, technical_name: str = "", version: str = "") -> str:
    """
    Gateway-relative service path ending in "/".

    Task processing services above version 1 need the ";mo" suffix.
    """
    if ODATA_ROOT in service_url:
        path = ODATA_ROOT + service_url.split(ODATA_ROOT, 1)[1]
    else:
        path = urlparse(service_url).path or service_url
    path = path.rstrip("/")
    if "TASKPROCESSING" in technical_name and version.isdigit() and int(version) > 1:
        path += ";mo"
    return path + "/"


def parse_catalog(payload: Any) -> list[CatalogEntry]:
    """
    Parse a V2 catalog ServiceCollection response.

    Args:
        payload: Decoded JSON body ({"d": {"results": [...]}})

    Returns:
        Catalog entries in response order; entries without an ID are skipped
    """
    results = ((payload or {}).get("d") or {}).get("results") or []
    entries = []
    for item in results:
        service_id = item.get("ID")
        if not service_id:
            continue
        version = item.get("TechnicalServiceVersion") or "0001"
        path = service_base_path(
            item.get("ServiceUrl") or "",
            item.get("TechnicalServiceName") or "",
            version,
        )
        entries.append(
            CatalogEntry(
                id=service_id,
                title=item.get("Title") or service_id,
                description=item.get("Description") or f"OData service {service_id}",
                service_path=path,
                metadata_path=f"{path}$metadata",
                version=version,
            )
        )
    return entries


def parse_metadata(xml_text: str) -> tuple[EntitySchema, ...]:
    """
    Parse a $metadata document into entity schemas.

    Capabilities come from the entity set whose EntityType names the
    entity; an entity type without an entity set gets no capabilities.

    Raises:
        ValueError: If the document is not well-formed XML
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f"Malformed $metadata document: {e}") from e

    entity_sets: dict[str, ET.Element] = {}
    for element in root.iter():
        if _local(element.tag) != "EntitySet":
            continue
        entity_type = _attr(element, "EntityType") or ""
        type_name = entity_type.rsplit(".", 1)[-1]
        if _attr(element, "Name") and type_name not in entity_sets:
            entity_sets[type_name] = element

    entities = []
    for schema in root.iter():
        if _local(schema.tag) != "Schema":
            continue
        namespace = _attr(schema, "Namespace") or ""

        for node in _children(schema, "EntityType"):
            name = _attr(node, "Name") or ""
            entity_set = entity_sets.get(name)

            properties = tuple(
                PropertySchema(
                    name=_attr(prop, "Name") or "",
                    type=_attr(prop, "Type") or "",
                    nullable=_attr(prop, "Nullable") != "false",
                    max_length=_attr(prop, "MaxLength"),
                )
                for prop in _children(node, "Property")
            )
            keys = tuple(
                _attr(ref, "Name") or ""
                for key in _children(node, "Key")
                for ref in _children(key, "PropertyRef")
            )

            entities.append(
                EntitySchema(
                    entity_name=name,
                    entity_set=_attr(entity_set, "Name") if entity_set is not None else None,
                    keys=keys,
                    properties=properties,
                    capabilities=EntityCapabilities(
                        creatable=_flag(entity_set, "creatable"),
                        updatable=_flag(entity_set, "updatable"),
                        deletable=_flag(entity_set, "deletable"),
                    ),
                    namespace=namespace,
                )
            )

    return tuple(entities)
