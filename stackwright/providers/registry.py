"""Provider layer — Provider registry.

The registry is the single point of truth for which resource kinds can be
reconciled.  The graph builder consults it to reject unknown kinds before
any provider call, and the engine uses it to dispatch CRUD operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from stackwright.exceptions import UnknownKindError
from stackwright.logging import get_logger

if TYPE_CHECKING:
    from stackwright.providers.base import BaseProvider

log = get_logger(__name__)


class ProviderRegistry:
    """Runtime registry of provider adapters keyed by kind.

    Usage::

        registry = ProviderRegistry()
        registry.register(NamespaceProvider(tools))
        provider = registry.get("namespace")
        outputs = await provider.create(spec)
    """

    def __init__(self) -> None:
        self._providers: dict[str, "BaseProvider"] = {}

    def register(self, provider: "BaseProvider") -> None:
        kind = provider.KIND
        if not kind:
            raise ValueError(f"Provider {type(provider).__name__} has no KIND.")
        if kind in self._providers:
            log.warning("provider_already_registered", kind=kind)
        self._providers[kind] = provider
        log.debug("provider_registered", kind=kind, provider=type(provider).__name__)

    def unregister(self, kind: str) -> None:
        self._providers.pop(kind, None)

    def get(self, kind: str) -> "BaseProvider":
        """Return the adapter for *kind*.

        Raises:
            UnknownKindError: No adapter is registered for this kind.
        """
        try:
            return self._providers[kind]
        except KeyError:
            raise UnknownKindError(kind) from None

    def kinds(self) -> list[str]:
        return sorted(self._providers)

    def list(self) -> list["BaseProvider"]:
        return [self._providers[k] for k in self.kinds()]

    def describe(self) -> list[dict[str, Any]]:
        return [p.describe() for p in self.list()]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def __len__(self) -> int:
        return len(self._providers)
