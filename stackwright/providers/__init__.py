"""Provider layer — adapters that perform CRUD against external systems."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stackwright.providers.base import BaseProvider, ResolvedSpec
from stackwright.providers.civo import (
    CivoClient,
    ClusterProvider,
    DnsRecordProvider,
    FirewallProvider,
    NetworkProvider,
)
from stackwright.providers.helm import ChartProvider
from stackwright.providers.kubernetes import NamespaceProvider
from stackwright.providers.memory import InMemoryProvider
from stackwright.providers.registry import ProviderRegistry

if TYPE_CHECKING:
    from stackwright.config import Settings

BUILTIN_PROVIDERS: tuple[type[BaseProvider], ...] = (
    NetworkProvider,
    FirewallProvider,
    ClusterProvider,
    DnsRecordProvider,
    NamespaceProvider,
    ChartProvider,
)


def build_provider_registry(settings: "Settings", simulate: bool = False) -> ProviderRegistry:
    """Register every built-in adapter.

    With *simulate*, each built-in kind is backed by an :class:`InMemoryProvider`
    producing the same output fields, so manifests can be exercised offline.
    """
    registry = ProviderRegistry()

    if simulate:
        for provider_class in BUILTIN_PROVIDERS:
            registry.register(
                InMemoryProvider(
                    provider_class.KIND,
                    outputs=provider_class.OUTPUTS,
                    required_inputs=provider_class.REQUIRED_INPUTS,
                )
            )
        return registry

    timeout = settings.engine.resource_timeout_seconds
    client = CivoClient.from_config(settings.civo)
    registry.register(NetworkProvider(client))
    registry.register(FirewallProvider(client))
    registry.register(ClusterProvider(client, poll_interval_seconds=settings.civo.poll_interval_seconds))
    registry.register(DnsRecordProvider(client))
    registry.register(NamespaceProvider(kubectl_path=settings.tools.kubectl_path, timeout=timeout))
    registry.register(ChartProvider(helm_path=settings.tools.helm_path, timeout=timeout))
    return registry


__all__ = [
    "BUILTIN_PROVIDERS",
    "BaseProvider",
    "ChartProvider",
    "CivoClient",
    "ClusterProvider",
    "DnsRecordProvider",
    "FirewallProvider",
    "InMemoryProvider",
    "NamespaceProvider",
    "NetworkProvider",
    "ProviderRegistry",
    "ResolvedSpec",
    "build_provider_registry",
]
