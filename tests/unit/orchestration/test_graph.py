"""Unit tests — ResourceRegistry and DependencyGraph."""

from __future__ import annotations

import pytest

from stackwright.exceptions import (
    CycleDetectedError,
    DuplicateResourceError,
    InvalidSpecError,
    ResourceNotFoundError,
    UnknownKindError,
    UnresolvedReferenceError,
)
from stackwright.manifest.models import Manifest, ResourceSpec, ResourceStatus
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.state import ResourceState
from stackwright.providers.memory import InMemoryProvider
from stackwright.providers.registry import ProviderRegistry


def _spec(rid: str, kind: str = "network", depends_on: list[str] | None = None, **inputs: object) -> ResourceSpec:
    return ResourceSpec(id=rid, kind=kind, inputs=dict(inputs), depends_on=frozenset(depends_on or []))


def _graph(*specs: ResourceSpec, providers: ProviderRegistry | None = None) -> DependencyGraph:
    registry = ResourceRegistry()
    for spec in specs:
        registry.declare(spec)
    return DependencyGraph.build(registry, providers)


# ---------------------------------------------------------------------------
# ResourceRegistry
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestResourceRegistry:
    def test_declare_and_get(self) -> None:
        registry = ResourceRegistry()
        registry.declare(_spec("net"))
        assert registry.get("net").kind == "network"
        assert "net" in registry
        assert registry.ids() == ["net"]

    def test_duplicate(self) -> None:
        registry = ResourceRegistry()
        registry.declare(_spec("net"))
        with pytest.raises(DuplicateResourceError):
            registry.declare(_spec("net", kind="cluster"))

    def test_get_unknown(self) -> None:
        with pytest.raises(ResourceNotFoundError):
            ResourceRegistry().get("net")

    def test_from_manifest_rejects_duplicates(self) -> None:
        manifest = Manifest(resources=[_spec("a"), _spec("a")])
        with pytest.raises(DuplicateResourceError):
            ResourceRegistry.from_manifest(manifest)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestStages:
    def test_reference_chain(self, stack_graph: DependencyGraph) -> None:
        assert stack_graph.stages() == [["net"], ["fw"], ["cluster"]]
        assert stack_graph.reverse_stages() == [["cluster"], ["fw"], ["net"]]
        assert stack_graph.dependencies("cluster") == ["fw", "net"]
        assert stack_graph.dependents("net") == ["cluster", "fw"]

    def test_independent_resources_share_a_stage(self) -> None:
        graph = _graph(_spec("b"), _spec("a"), _spec("c", depends_on=["a", "b"]))
        assert graph.stages() == [["a", "b"], ["c"]]

    def test_stage_is_longest_path(self) -> None:
        graph = _graph(
            _spec("a"),
            _spec("b", depends_on=["a"]),
            _spec("c", depends_on=["b"]),
            _spec("d", depends_on=["a"]),
            _spec("e", depends_on=["c", "d"]),
        )
        assert graph.stages() == [["a"], ["b", "d"], ["c"], ["e"]]
        order = graph.topological_order()
        for src, dst in graph.edges():
            assert order.index(src) < order.index(dst)

    def test_depends_on_and_reference_merge(self) -> None:
        graph = _graph(_spec("a"), _spec("b", depends_on=["a"], x="{{outputs.a.id}}"))
        assert graph.edges() == [("a", "b")]

    def test_ancestors_and_descendants(self, stack_graph: DependencyGraph) -> None:
        assert stack_graph.ancestors("cluster") == {"net", "fw"}
        assert stack_graph.descendants("net") == {"fw", "cluster"}

    def test_empty(self) -> None:
        graph = _graph()
        assert graph.stages() == []
        assert len(graph) == 0


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestValidation:
    def test_cycle(self) -> None:
        with pytest.raises(CycleDetectedError) as exc_info:
            _graph(
                _spec("a", depends_on=["c"]),
                _spec("b", depends_on=["a"]),
                _spec("c", depends_on=["b"]),
                _spec("d"),
            )
        assert exc_info.value.nodes == ["a", "b", "c"]
        assert set(exc_info.value.cycle) == {"a", "b", "c"}

    def test_self_reference_is_a_cycle(self) -> None:
        with pytest.raises(CycleDetectedError):
            _graph(_spec("a", x="{{outputs.a.id}}"))

    def test_unknown_depends_on(self) -> None:
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            _graph(_spec("a", depends_on=["ghost"]))
        assert exc_info.value.reference == "ghost"

    def test_unknown_reference(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="ghost"):
            _graph(_spec("a", x="{{outputs.ghost.id}}"))

    def test_unknown_reference_prefix(self) -> None:
        net = _spec("net")
        fw = _spec("fw", kind="firewall", network_id="{{output.net.id}}")
        with pytest.raises(InvalidSpecError, match="output.net.id") as exc_info:
            _graph(net, fw)
        assert exc_info.value.resource_id == "fw"

    def test_unknown_kind(self, memory_providers: ProviderRegistry) -> None:
        with pytest.raises(UnknownKindError) as exc_info:
            _graph(_spec("db", kind="database"), providers=memory_providers)
        assert exc_info.value.resource_id == "db"

    def test_provider_validation_runs(self) -> None:
        providers = ProviderRegistry()
        providers.register(InMemoryProvider("chart", required_inputs=("repo",)))
        with pytest.raises(InvalidSpecError):
            _graph(_spec("jaeger", kind="chart", repo=""), providers=providers)

    def test_spec_lookup(self, stack_graph: DependencyGraph) -> None:
        assert stack_graph.spec("fw").kind == "firewall"
        with pytest.raises(ResourceNotFoundError):
            stack_graph.spec("ghost")


# ---------------------------------------------------------------------------
# From stored state
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestFromState:
    def test_drops_unknown_and_self_dependencies(self) -> None:
        states = [
            ResourceState(id="net", kind="network", status=ResourceStatus.CREATED, dependencies=["net"]),
            ResourceState(id="fw", kind="firewall", status=ResourceStatus.CREATED, dependencies=["net", "gone"]),
        ]
        graph = DependencyGraph.from_state(states)
        assert graph.stages() == [["net"], ["fw"]]
        assert graph.kind("fw") == "firewall"
        with pytest.raises(ResourceNotFoundError):
            graph.spec("fw")
