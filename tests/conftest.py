"""Shared pytest fixtures for the stackwright test suite."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from stackwright.config import RetryConfig, Settings, override_settings
from stackwright.logging import configure_logging
from stackwright.manifest.models import Manifest, ResourceSpec
from stackwright.manifest.parser import ManifestParser
from stackwright.orchestration.engine import ReconciliationEngine
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.state import StateStore
from stackwright.providers.memory import InMemoryProvider
from stackwright.providers.registry import ProviderRegistry

MEMORY_KINDS = ("network", "firewall", "cluster", "dns-record", "namespace", "chart")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def _configure_test_logging() -> None:
    configure_logging(level="warning", format="console")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    settings = Settings(
        state={"db_path": str(tmp_path / "state.db")},
        engine={"retry": {"max_attempts": 3, "delay_seconds": 0.0}},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    return settings


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


@pytest.fixture
def parser() -> ManifestParser:
    return ManifestParser()


@pytest.fixture
def stack_manifest() -> Manifest:
    """network -> firewall -> cluster, wired through output references."""
    return Manifest(
        name="test-stack",
        resources=[
            ResourceSpec(id="net", kind="network", inputs={"label": "main"}),
            ResourceSpec(
                id="fw",
                kind="firewall",
                inputs={"name": "fw", "network_id": "{{outputs.net.id}}"},
            ),
            ResourceSpec(
                id="cluster",
                kind="cluster",
                inputs={
                    "name": "k3s",
                    "network_id": "{{outputs.net.id}}",
                    "firewall_id": "{{outputs.fw.id}}",
                },
            ),
        ],
    )


def graph_of(manifest: Manifest, providers: ProviderRegistry | None = None) -> DependencyGraph:
    return DependencyGraph.build(ResourceRegistry.from_manifest(manifest), providers)


@pytest.fixture
def stack_graph(stack_manifest: Manifest, memory_providers: ProviderRegistry) -> DependencyGraph:
    return graph_of(stack_manifest, memory_providers)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_providers() -> ProviderRegistry:
    registry = ProviderRegistry()
    for kind in MEMORY_KINDS:
        registry.register(InMemoryProvider(kind))
    return registry


# ---------------------------------------------------------------------------
# State store and engine
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def state_store(tmp_path: Path) -> AsyncGenerator[StateStore, None]:
    store = StateStore(tmp_path / "test_state.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def engine(memory_providers: ProviderRegistry, state_store: StateStore) -> ReconciliationEngine:
    return ReconciliationEngine(
        memory_providers,
        state_store,
        max_workers=4,
        resource_timeout_seconds=5.0,
        retry=RetryConfig(max_attempts=3, delay_seconds=0.0),
    )
