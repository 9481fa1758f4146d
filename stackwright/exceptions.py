"""Stackwright — Exception hierarchy.

All exceptions raised by stackwright inherit from StackwrightError so that
callers can catch the full family with a single except clause when needed.

Hierarchy:
    StackwrightError
    ├── ConfigurationError
    │   ├── ManifestParseError
    │   ├── ManifestValidationError
    │   ├── DuplicateResourceError
    │   ├── ResourceNotFoundError
    │   ├── UnresolvedReferenceError
    │   ├── UnknownKindError
    │   ├── InvalidSpecError
    │   └── CycleDetectedError
    ├── ProviderError
    │   ├── TransientProviderError
    │   ├── PermanentProviderError
    │   └── ProviderResourceNotFoundError
    ├── OrchestrationError
    │   ├── BlockedError
    │   ├── ExecutionTimeoutError
    │   └── ReferenceResolutionError
    └── StateStoreError

Configuration errors are fatal and raised before any provider call.
Provider errors are attributed to a single resource and never abort a run.
"""

from __future__ import annotations

from typing import Any


class StackwrightError(Exception):
    """Base exception for all stackwright errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(StackwrightError):
    """Base for errors in the declared resource set."""


class ManifestParseError(ConfigurationError):
    """The manifest could not be read or deserialised."""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message, context={"source": source})
        self.source = source


class ManifestValidationError(ConfigurationError):
    """The manifest failed schema validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, context={"validation_errors": errors or []})
        self.errors = errors or []


class DuplicateResourceError(ConfigurationError):
    """A resource id was declared twice."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(
            f"Resource '{resource_id}' is already declared",
            context={"resource_id": resource_id},
        )
        self.resource_id = resource_id


class ResourceNotFoundError(ConfigurationError):
    """No resource with this id has been declared."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(
            f"Resource '{resource_id}' is not declared",
            context={"resource_id": resource_id},
        )
        self.resource_id = resource_id


class UnresolvedReferenceError(ConfigurationError):
    """A dependsOn entry or input reference names an undeclared resource."""

    def __init__(self, resource_id: str, reference: str, via: str = "reference") -> None:
        super().__init__(
            f"Resource '{resource_id}' has {via} to undeclared resource '{reference}'",
            context={"resource_id": resource_id, "reference": reference, "via": via},
        )
        self.resource_id = resource_id
        self.reference = reference


class UnknownKindError(ConfigurationError):
    """No provider adapter is registered for a resource kind."""

    def __init__(self, kind: str, resource_id: str | None = None) -> None:
        where = f" (resource '{resource_id}')" if resource_id else ""
        super().__init__(
            f"No provider registered for kind '{kind}'{where}",
            context={"kind": kind, "resource_id": resource_id},
        )
        self.kind = kind
        self.resource_id = resource_id


class InvalidSpecError(ConfigurationError):
    """A provider rejected the static inputs of a resource."""

    def __init__(self, resource_id: str, kind: str, reason: str) -> None:
        super().__init__(
            f"Resource '{resource_id}' ({kind}) is invalid: {reason}",
            context={"resource_id": resource_id, "kind": kind, "reason": reason},
        )
        self.resource_id = resource_id
        self.kind = kind
        self.reason = reason


class CycleDetectedError(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, nodes: list[str], cycle: list[str] | None = None) -> None:
        path = " -> ".join(cycle) if cycle else ", ".join(nodes)
        super().__init__(
            f"Dependency cycle detected: {path}",
            context={"nodes": nodes, "cycle": cycle or []},
        )
        self.nodes = nodes
        self.cycle = cycle or []


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


class ProviderError(StackwrightError):
    """Base for failures reported by a provider adapter."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        resource_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"kind": kind, "resource_id": resource_id}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.kind = kind
        self.resource_id = resource_id


class TransientProviderError(ProviderError):
    """A retryable failure (throttling, timeouts, connectivity)."""

    transient = True


class PermanentProviderError(ProviderError):
    """A failure that will not go away by retrying."""


class ProviderResourceNotFoundError(ProviderError):
    """The external object backing a resource does not exist."""


# ---------------------------------------------------------------------------
# Orchestration layer
# ---------------------------------------------------------------------------


class OrchestrationError(StackwrightError):
    """Base for all reconciliation errors."""


class BlockedError(OrchestrationError):
    """A resource was skipped because one of its dependencies failed."""

    def __init__(self, resource_id: str, blocked_by: str) -> None:
        super().__init__(
            f"Resource '{resource_id}' blocked by failed dependency '{blocked_by}'",
            context={"resource_id": resource_id, "blocked_by": blocked_by},
        )
        self.resource_id = resource_id
        self.blocked_by = blocked_by


class ExecutionTimeoutError(OrchestrationError):
    """A provider call exceeded the configured timeout."""

    def __init__(self, resource_id: str, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{operation} of '{resource_id}' timed out after {timeout_seconds:g}s",
            context={
                "resource_id": resource_id,
                "operation": operation,
                "timeout_seconds": timeout_seconds,
            },
        )
        self.resource_id = resource_id
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ReferenceResolutionError(OrchestrationError):
    """A ``{{outputs.X.Y}}`` or ``{{env.X}}`` expression could not be resolved."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(
            f"Cannot resolve '{expression}': {reason}",
            context={"expression": expression, "reason": reason},
        )
        self.expression = expression


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class StateStoreError(StackwrightError):
    """SQLite state store operation failed."""
