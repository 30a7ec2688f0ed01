"""
Error taxonomy for catalog discovery.

Every error carries enough context for the caller to recover on its own:
the valid alternatives, the capability that blocked a call, or the
provider and key that failed upstream.

- ConfigurationError: malformed classifier rules (fatal at startup)
- NotFoundError: unknown service or entity (lists valid alternatives)
- CapabilityError: mutation not permitted by the entity schema
- ValidationError: missing key fields, invalid operation or limit
- UpstreamError: catalog, schema, embedding or gateway failure
"""

from typing import Any, Optional


class CatalogError(Exception):
    """Base class for all errors returned at the tool boundary."""

    code = "error"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.remediation = remediation

    def to_payload(self) -> dict[str, Any]:
        """Structured form returned to MCP clients."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.remediation:
            payload["remediation"] = self.remediation
        return payload


class ConfigurationError(CatalogError):
    """Raised when classifier rules cannot be loaded."""

    code = "configuration_error"

    def __init__(self, domain: Optional[str], pattern: Optional[str], reason: str):
        where = f"domain '{domain}'" if domain else "classifier config"
        if pattern is not None:
            message = f"Invalid pattern {pattern!r} in {where}: {reason}"
        else:
            message = f"Invalid {where}: {reason}"
        super().__init__(message, details={"domain": domain, "pattern": pattern})
        self.domain = domain
        self.pattern = pattern


class NotFoundError(CatalogError):
    """Unknown service or entity. `available` lists what does exist."""

    code = "not_found"

    def __init__(self, kind: str, name: str, available: list[str], scope: Optional[str] = None):
        location = f" in {scope}" if scope else ""
        message = f"{kind.capitalize()} '{name}' not found{location}"
        if available:
            remediation = f"Use one of the available {kind} names: {', '.join(available)}"
        else:
            remediation = f"No {kind} names are available{location}"
        super().__init__(
            message,
            details={"kind": kind, "name": name, "available": list(available)},
            remediation=remediation,
        )
        self.kind = kind
        self.name = name
        self.available = list(available)


class CapabilityError(CatalogError):
    """The entity schema does not permit the requested mutation."""

    code = "capability_error"

    def __init__(self, service_id: str, entity_name: str, capability: str):
        super().__init__(
            f"Entity '{entity_name}' in {service_id} is not {capability}",
            details={
                "service_id": service_id,
                "entity_name": entity_name,
                "capability": capability,
            },
            remediation=(
                f"The schema marks '{entity_name}' as not {capability}. "
                "Call get_entity_metadata to check capabilities, or use a read operation."
            ),
        )
        self.service_id = service_id
        self.entity_name = entity_name
        self.capability = capability


class ValidationError(CatalogError):
    """Request arguments are incomplete or invalid."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        missing: Optional[list[str]] = None,
        valid: Optional[list[str]] = None,
    ):
        details: dict[str, Any] = {}
        remediation = None
        if missing:
            details["missing"] = list(missing)
            remediation = f"Provide values for: {', '.join(missing)}"
        if valid:
            details["valid"] = list(valid)
            remediation = f"Valid values: {', '.join(valid)}"
        super().__init__(message, details=details, remediation=remediation)
        self.missing = list(missing or [])
        self.valid = list(valid or [])


class UpstreamError(CatalogError):
    """A collaborator (catalog, schema, embedding, gateway) failed."""

    code = "upstream_error"

    def __init__(
        self,
        provider: str,
        key: Optional[str],
        message: str,
        status: Optional[int] = None,
    ):
        target = f" for {key}" if key else ""
        details: dict[str, Any] = {"provider": provider, "key": key}
        if status is not None:
            details["status"] = status
        super().__init__(
            f"{provider} provider failed{target}: {message}",
            details=details,
            remediation="Retry the request; nothing was cached for this failure.",
        )
        self.provider = provider
        self.key = key
        self.status = status
