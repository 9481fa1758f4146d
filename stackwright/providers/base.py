"""Provider layer — BaseProvider interface.

Every provider adapter must subclass ``BaseProvider``, set ``KIND`` and
implement the four CRUD coroutines.

Design principles:
  - One adapter per resource kind; adapters hold no per-run state.
  - ``create()`` must be idempotent: the engine retries it after transient
    errors, so a repeated call for the same resource id must not duplicate
    the external object.
  - All failures are raised as ``ProviderError`` subclasses.  The adapter
    decides whether a failure is transient (retried) or permanent.
  - ``read()`` and ``delete()`` receive the stored ``ResourceState`` so they
    can reach the object through its last-applied inputs and outputs
    without the manifest.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from stackwright.exceptions import InvalidSpecError, PermanentProviderError
from stackwright.manifest.models import ResourceSpec

if TYPE_CHECKING:
    from stackwright.orchestration.state import ResourceState


@dataclass(frozen=True)
class ResolvedSpec:
    """A resource declaration with every reference substituted."""

    id: str
    kind: str
    inputs: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.inputs.get(key, default)

    def require(self, key: str) -> Any:
        """Return input *key*, raising a permanent error when it is missing."""
        value = self.inputs.get(key)
        if value is None or value == "":
            raise PermanentProviderError(
                f"Input '{key}' is required",
                kind=self.kind,
                resource_id=self.id,
            )
        return value


class BaseProvider(ABC):
    """Abstract base class for all provider adapters.

    Subclasses must:
      1. Set ``KIND`` class attribute (kebab-case, e.g. ``"dns-record"``)
      2. Implement :meth:`create`, :meth:`read`, :meth:`update`, :meth:`delete`
      3. Optionally override :meth:`validate` for static input checks
      4. Optionally list the output fields they produce in ``OUTPUTS``
    """

    KIND: str = ""
    VERSION: str = "0.1.0"
    DESCRIPTION: str = ""
    OUTPUTS: tuple[str, ...] = ()
    REQUIRED_INPUTS: tuple[str, ...] = ()

    def validate(self, spec: ResourceSpec) -> None:
        """Reject statically invalid inputs before any provider call.

        Called by the graph builder on the *unresolved* inputs, so values
        may still be reference strings.  The default checks that every key
        in ``REQUIRED_INPUTS`` is present and non-empty.

        Raises:
            InvalidSpecError: The declaration can never be applied.
        """
        self._require_present(spec, self.REQUIRED_INPUTS)

    @abstractmethod
    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        """Create the external object and return its outputs."""
        ...

    @abstractmethod
    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        """Return the observed outputs of an existing object.

        Raises:
            ProviderResourceNotFoundError: The object no longer exists.
        """
        ...

    @abstractmethod
    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        """Converge an existing object to *spec* and return its outputs."""
        ...

    @abstractmethod
    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        """Delete the external object.  Deleting a missing object succeeds."""
        ...

    async def close(self) -> None:
        """Release connections held by the adapter."""

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.KIND,
            "version": self.VERSION,
            "description": self.DESCRIPTION,
            "outputs": list(self.OUTPUTS),
            "required_inputs": list(self.REQUIRED_INPUTS),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_present(self, spec: ResourceSpec, keys: Iterable[str]) -> None:
        for key in keys:
            value = spec.inputs.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise InvalidSpecError(spec.id, spec.kind, f"input '{key}' must not be empty")
