"""Provider layer — In-memory provider.

Keeps objects in a process-local dict.  Used by the test-suite and by
``--simulate`` runs, which register one instance per built-in kind so a
manifest can be planned and applied without touching any real system.

Failure injection:
    fail_on             Resource ids whose create/update/delete always fail
                        with a permanent error.
    transient_failures  Resource id -> number of transient errors raised
                        before the operation succeeds.
    delay_seconds       Sleep inside every call (exercises timeouts).
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Any, Iterable

from stackwright.exceptions import (
    PermanentProviderError,
    ProviderResourceNotFoundError,
    TransientProviderError,
)
from stackwright.logging import get_logger
from stackwright.providers.base import BaseProvider, ResolvedSpec

if TYPE_CHECKING:
    from stackwright.orchestration.state import ResourceState

log = get_logger(__name__)


class InMemoryProvider(BaseProvider):
    """Process-local stand-in for any resource kind."""

    VERSION = "0.1.0"

    def __init__(
        self,
        kind: str,
        outputs: Iterable[str] = (),
        required_inputs: Iterable[str] = (),
        fail_on: Iterable[str] = (),
        transient_failures: dict[str, int] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.KIND = kind
        self.DESCRIPTION = f"In-memory {kind} objects"
        self.OUTPUTS = ("id", *(o for o in outputs if o != "id"))
        self.REQUIRED_INPUTS = tuple(required_inputs)
        self.fail_on = set(fail_on)
        self.transient_failures = dict(transient_failures or {})
        self.delay_seconds = delay_seconds
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._counter = itertools.count(1)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        await self._enter("create", spec.id)
        existing = self.objects.get(spec.id)
        if existing is not None:
            return dict(existing)
        outputs = self._outputs_for(spec, object_id=f"{self.KIND}-{next(self._counter)}")
        self.objects[spec.id] = outputs
        log.debug("memory_object_created", kind=self.KIND, resource_id=spec.id)
        return dict(outputs)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        self.calls.append(("read", resource_id))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if resource_id not in self.objects:
            raise ProviderResourceNotFoundError(
                f"{self.KIND} '{resource_id}' not found",
                kind=self.KIND,
                resource_id=resource_id,
            )
        return dict(self.objects[resource_id])

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update", spec.id)
        object_id = observed.get("id") or f"{self.KIND}-{next(self._counter)}"
        outputs = self._outputs_for(spec, object_id=object_id)
        self.objects[spec.id] = outputs
        return dict(outputs)

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        await self._enter("delete", resource_id)
        self.objects.pop(resource_id, None)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def calls_for(self, operation: str) -> list[str]:
        return [rid for op, rid in self.calls if op == operation]

    def reset_calls(self) -> None:
        self.calls.clear()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _enter(self, operation: str, resource_id: str) -> None:
        self.calls.append((operation, resource_id))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if resource_id in self.fail_on:
            raise PermanentProviderError(
                f"Injected failure on {operation} of '{resource_id}'",
                kind=self.KIND,
                resource_id=resource_id,
            )
        remaining = self.transient_failures.get(resource_id, 0)
        if remaining > 0:
            self.transient_failures[resource_id] = remaining - 1
            raise TransientProviderError(
                f"Injected transient failure on {operation} of '{resource_id}'",
                kind=self.KIND,
                resource_id=resource_id,
            )

    def _outputs_for(self, spec: ResolvedSpec, object_id: str) -> dict[str, Any]:
        outputs: dict[str, Any] = dict(spec.inputs)
        outputs["id"] = object_id
        for name in self.OUTPUTS:
            outputs.setdefault(name, f"simulated-{spec.id}-{name}")
        return outputs
