"""Orchestration layer — Dependency graph builder.

Builds a NetworkX DiGraph from the declared resources and groups them into
stages.  An edge ``a -> b`` means ``a`` must be reconciled before ``b``;
edges come from explicit ``dependsOn`` entries and from every
``{{outputs.<id>...}}`` reference inside a resource's inputs.

A "stage" is a batch of resources with no edges among them, all of whose
dependencies sit in earlier stages, so they can be reconciled concurrently.
Stages are computed with Kahn's algorithm; any node left over when no
zero-in-degree node remains is part of a cycle.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping

import networkx as nx

from stackwright.exceptions import (
    CycleDetectedError,
    InvalidSpecError,
    ResourceNotFoundError,
    UnknownKindError,
    UnresolvedReferenceError,
)
from stackwright.manifest.models import ResourceSpec
from stackwright.manifest.references import find_references, find_unsupported_references

if TYPE_CHECKING:
    from stackwright.orchestration.registry import ResourceRegistry
    from stackwright.orchestration.state import ResourceState
    from stackwright.providers.registry import ProviderRegistry


class DependencyGraph:
    """Validated dependency graph over a set of resources.

    Usage::

        graph = DependencyGraph.build(resources, providers)
        for stage in graph.stages():
            # reconcile every id in `stage` concurrently
    """

    def __init__(
        self,
        graph: nx.DiGraph,
        kinds: Mapping[str, str],
        specs: Mapping[str, ResourceSpec] | None = None,
    ) -> None:
        self._graph = graph
        self._kinds = dict(kinds)
        self._specs = dict(specs or {})
        self._stages = _kahn_stages(graph)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        resources: "ResourceRegistry",
        providers: "ProviderRegistry | None" = None,
    ) -> "DependencyGraph":
        """Validate *resources* and return their graph.

        Every check runs before any provider call.

        Raises:
            UnresolvedReferenceError: A dependsOn entry or reference names an
                undeclared resource.
            UnknownKindError: No provider is registered for a kind.
            InvalidSpecError: A reference uses an unknown prefix, or a provider
                rejected a resource's static inputs.
            CycleDetectedError: The edges do not form a DAG.
        """
        graph: nx.DiGraph = nx.DiGraph()
        specs = resources.list()
        for spec in specs:
            graph.add_node(spec.id)

        for spec in specs:
            for dep in sorted(spec.depends_on):
                if dep not in resources:
                    raise UnresolvedReferenceError(spec.id, dep, via="dependsOn")
                graph.add_edge(dep, spec.id)
            unsupported = find_unsupported_references(spec.inputs)
            if unsupported:
                raise InvalidSpecError(
                    spec.id,
                    spec.kind,
                    f"unsupported reference {unsupported[0]!r}; "
                    "use outputs.<id>.<field> or env.<NAME>",
                )
            for ref in sorted(find_references(spec.inputs)):
                if ref not in resources:
                    raise UnresolvedReferenceError(spec.id, ref)
                graph.add_edge(ref, spec.id)

        if providers is not None:
            for spec in specs:
                _validate_with_provider(spec, providers)

        return cls(
            graph,
            {spec.id: spec.kind for spec in specs},
            {spec.id: spec for spec in specs},
        )

    @classmethod
    def from_state(cls, states: Iterable["ResourceState"]) -> "DependencyGraph":
        """Build a graph from stored state alone.

        Used by destroy and orphan cleanup, which must work without the
        manifest.  Dependencies on ids absent from *states* are dropped.
        """
        records = list(states)
        known = {s.id for s in records}
        graph: nx.DiGraph = nx.DiGraph()
        for state in records:
            graph.add_node(state.id)
        for state in records:
            for dep in state.dependencies:
                if dep in known and dep != state.id:
                    graph.add_edge(dep, state.id)
        return cls(graph, {s.id: s.kind for s in records})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stages(self) -> list[list[str]]:
        """Return stages in apply order.  Ids within a stage are sorted."""
        return [list(stage) for stage in self._stages]

    def reverse_stages(self) -> list[list[str]]:
        """Return stages in destroy order."""
        return [list(stage) for stage in reversed(self._stages)]

    def topological_order(self) -> list[str]:
        return [rid for stage in self._stages for rid in stage]

    def kind(self, resource_id: str) -> str:
        return self._kinds[resource_id]

    def spec(self, resource_id: str) -> ResourceSpec:
        """Return the declaration of *resource_id*.

        Raises:
            ResourceNotFoundError: The graph was built from state, or the id
                is not declared.
        """
        try:
            return self._specs[resource_id]
        except KeyError:
            raise ResourceNotFoundError(resource_id) from None

    def dependencies(self, resource_id: str) -> list[str]:
        """Return ids *resource_id* directly depends on."""
        return sorted(self._graph.predecessors(resource_id))

    def dependents(self, resource_id: str) -> list[str]:
        """Return ids that depend directly on *resource_id*."""
        return sorted(self._graph.successors(resource_id))

    def ancestors(self, resource_id: str) -> set[str]:
        return nx.ancestors(self._graph, resource_id)

    def descendants(self, resource_id: str) -> set[str]:
        return nx.descendants(self._graph, resource_id)

    def edges(self) -> list[tuple[str, str]]:
        return sorted(self._graph.edges())

    def ids(self) -> list[str]:
        return self.topological_order()

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._graph

    def __len__(self) -> int:
        return self._graph.number_of_nodes()


def _validate_with_provider(spec: ResourceSpec, providers: "ProviderRegistry") -> None:
    if spec.kind not in providers:
        raise UnknownKindError(spec.kind, resource_id=spec.id)
    providers.get(spec.kind).validate(spec)


def _kahn_stages(graph: nx.DiGraph) -> list[list[str]]:
    """Kahn's algorithm: remove all zero-in-degree nodes per round."""
    remaining = graph.copy()
    stages: list[list[str]] = []

    while remaining.nodes:
        ready = [n for n in remaining.nodes if remaining.in_degree(n) == 0]
        if not ready:
            leftover = sorted(remaining.nodes)
            try:
                cycle = nx.find_cycle(remaining)
                cycle_ids = [edge[0] for edge in cycle] + [cycle[-1][1]]
            except nx.NetworkXNoCycle:
                cycle_ids = []
            raise CycleDetectedError(leftover, cycle_ids)
        stages.append(sorted(ready))
        remaining.remove_nodes_from(ready)

    return stages
