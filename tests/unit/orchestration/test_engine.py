"""Unit tests — ReconciliationEngine (plan, apply, destroy) against in-memory providers."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from stackwright.config import RetryConfig
from stackwright.exceptions import ResourceNotFoundError
from stackwright.manifest.constants import UNKNOWN_OUTPUT
from stackwright.manifest.models import (
    ChangeAction,
    Manifest,
    OutcomeResult,
    ResourceSpec,
    ResourceStatus,
)
from stackwright.orchestration.engine import (
    ReconciliationEngine,
    compute_inputs_hash,
    decide_action,
    diff_inputs,
)
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.state import ResourceState, StateStore
from stackwright.providers.base import ResolvedSpec
from stackwright.providers.memory import InMemoryProvider
from stackwright.providers.registry import ProviderRegistry


def _manifest(net_label: str = "main", cluster_name: str = "k3s", extra: tuple[ResourceSpec, ...] = ()) -> Manifest:
    return Manifest(resources=[
        ResourceSpec(id="net", kind="network", inputs={"label": net_label}),
        ResourceSpec(id="fw", kind="firewall", inputs={"name": "fw", "network_id": "{{outputs.net.id}}"}),
        ResourceSpec(
            id="cluster",
            kind="cluster",
            inputs={
                "name": cluster_name,
                "network_id": "{{outputs.net.id}}",
                "firewall_id": "{{outputs.fw.id}}",
            },
        ),
        *extra,
    ])


def _graph(manifest: Manifest, providers: ProviderRegistry) -> DependencyGraph:
    return DependencyGraph.build(ResourceRegistry.from_manifest(manifest), providers)


def _provider(providers: ProviderRegistry, kind: str) -> InMemoryProvider:
    provider = providers.get(kind)
    assert isinstance(provider, InMemoryProvider)
    return provider


@pytest.fixture
def shared_calls(memory_providers: ProviderRegistry) -> list[tuple[str, str]]:
    """One call log across every in-memory provider, in global order."""
    calls: list[tuple[str, str]] = []
    for provider in memory_providers.list():
        assert isinstance(provider, InMemoryProvider)
        provider.calls = calls
    return calls


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestHelpers:
    def test_hash_ignores_key_order(self) -> None:
        assert compute_inputs_hash("network", {"a": 1, "b": {"x": 1, "y": 2}}) == compute_inputs_hash(
            "network", {"b": {"y": 2, "x": 1}, "a": 1}
        )

    def test_hash_includes_kind(self) -> None:
        assert compute_inputs_hash("network", {}) != compute_inputs_hash("firewall", {})

    def test_diff_inputs(self) -> None:
        assert diff_inputs({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == {"b": (2, 3), "c": (None, 4)}

    def test_decide_action(self) -> None:
        created = ResourceState(
            id="n", kind="network", status=ResourceStatus.CREATED,
            inputs_hash="h", outputs={"id": "x"},
        )
        assert decide_action(None, "h") == ChangeAction.CREATE
        assert decide_action(created, "h") == ChangeAction.NOOP
        assert decide_action(created, "other") == ChangeAction.UPDATE

        pending = ResourceState(id="n", kind="network", status=ResourceStatus.PENDING)
        assert decide_action(pending, "h") == ChangeAction.CREATE

        failed_fresh = ResourceState(id="n", kind="network", status=ResourceStatus.FAILED)
        assert decide_action(failed_fresh, "h") == ChangeAction.CREATE

        failed_existing = ResourceState(
            id="n", kind="network", status=ResourceStatus.FAILED,
            inputs_hash="h", outputs={"id": "x"},
        )
        assert decide_action(failed_existing, "h") == ChangeAction.UPDATE

        assert decide_action(created, "h", kind="namespace") == ChangeAction.CREATE
        assert decide_action(created, "h", kind="network") == ChangeAction.NOOP

    def test_invalid_worker_count(self, memory_providers: ProviderRegistry, state_store: StateStore) -> None:
        with pytest.raises(ValueError):
            ReconciliationEngine(memory_providers, state_store, max_workers=0)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.asyncio
class TestApply:
    async def test_creates_in_dependency_order(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.success
        assert summary.stages == [["net"], ["fw"], ["cluster"]]
        assert shared_calls == [("create", "net"), ("create", "fw"), ("create", "cluster")]
        assert summary.ids_with(OutcomeResult.CREATED) == ["cluster", "fw", "net"]

        states = await state_store.load()
        net_id = states["net"].outputs["id"]
        assert states["fw"].inputs["network_id"] == net_id
        assert states["cluster"].inputs["firewall_id"] == states["fw"].outputs["id"]
        assert states["cluster"].dependencies == ["fw", "net"]
        assert all(s.status == ResourceStatus.CREATED for s in states.values())

    async def test_second_apply_makes_no_provider_calls(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        shared_calls.clear()

        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.success
        assert shared_calls == []
        assert summary.ids_with(OutcomeResult.UNCHANGED) == ["cluster", "fw", "net"]

    async def test_changed_input_updates_only_that_resource(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        first = await state_store.load()
        shared_calls.clear()

        summary = await engine.apply(_graph(_manifest(net_label="renamed"), memory_providers))

        assert summary.result_of("net") == OutcomeResult.UPDATED
        assert summary.result_of("fw") == OutcomeResult.UNCHANGED
        assert summary.result_of("cluster") == OutcomeResult.UNCHANGED
        assert shared_calls == [("read", "net"), ("update", "net")]
        second = await state_store.load()
        assert second["net"].outputs["id"] == first["net"].outputs["id"]
        assert second["net"].inputs_hash != first["net"].inputs_hash

    async def test_update_of_vanished_object_recreates(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        _provider(memory_providers, "cluster").objects.clear()

        summary = await engine.apply(_graph(_manifest(cluster_name="bigger"), memory_providers))

        assert summary.outcomes["cluster"].action == ChangeAction.CREATE
        assert summary.result_of("cluster") == OutcomeResult.CREATED

    async def test_failure_blocks_dependents_only(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        _provider(memory_providers, "firewall").fail_on.add("fw")
        standalone = ResourceSpec(id="ns", kind="namespace", inputs={"name": "monitoring"})

        summary = await engine.apply(_graph(_manifest(extra=(standalone,)), memory_providers))

        assert not summary.success
        assert summary.result_of("net") == OutcomeResult.CREATED
        assert summary.result_of("ns") == OutcomeResult.CREATED
        assert summary.result_of("fw") == OutcomeResult.FAILED
        assert summary.result_of("cluster") == OutcomeResult.BLOCKED
        assert summary.outcomes["cluster"].blocked_by == "fw"
        assert summary.outcomes["cluster"].error == "Resource 'cluster' blocked by failed dependency 'fw'"
        assert "Injected failure" in (summary.outcomes["fw"].error or "")
        assert _provider(memory_providers, "cluster").calls == []

        states = await state_store.load()
        assert states["fw"].status == ResourceStatus.FAILED
        assert states["fw"].outputs == {}
        assert "cluster" not in states

    async def test_failed_resource_recovers_on_next_apply(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        firewall = _provider(memory_providers, "firewall")
        firewall.fail_on.add("fw")
        await engine.apply(_graph(_manifest(), memory_providers))
        firewall.fail_on.clear()

        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.success
        assert summary.result_of("fw") == OutcomeResult.CREATED
        assert summary.result_of("cluster") == OutcomeResult.CREATED
        assert summary.result_of("net") == OutcomeResult.UNCHANGED

    async def test_transient_errors_are_retried(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        _provider(memory_providers, "network").transient_failures["net"] = 2

        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.success
        assert summary.outcomes["net"].attempts == 3
        assert len(_provider(memory_providers, "network").objects) == 1

    async def test_retries_are_bounded(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        _provider(memory_providers, "network").transient_failures["net"] = 10

        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.result_of("net") == OutcomeResult.FAILED
        assert summary.outcomes["net"].attempts == 3
        assert summary.ids_with(OutcomeResult.BLOCKED) == ["cluster", "fw"]
        assert (await state_store.get("net")).attempts == 3  # type: ignore[union-attr]

    async def test_timeout_fails_resource(
        self,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        _provider(memory_providers, "network").delay_seconds = 1.0
        engine = ReconciliationEngine(
            memory_providers,
            state_store,
            resource_timeout_seconds=0.05,
            retry=RetryConfig(max_attempts=1, delay_seconds=0.0),
        )

        summary = await engine.apply(_graph(_manifest(), memory_providers))

        assert summary.result_of("net") == OutcomeResult.FAILED
        assert "timed out" in (summary.outcomes["net"].error or "")
        assert summary.result_of("cluster") == OutcomeResult.BLOCKED

    async def test_missing_output_field_fails_that_resource(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        dns = ResourceSpec(
            id="dns", kind="dns-record", inputs={"value": "{{outputs.net.no_such_field}}"}
        )

        summary = await engine.apply(_graph(_manifest(extra=(dns,)), memory_providers))

        assert summary.result_of("dns") == OutcomeResult.FAILED
        assert "no_such_field" in (summary.outcomes["dns"].error or "")
        assert _provider(memory_providers, "dns-record").calls == []
        assert summary.result_of("cluster") == OutcomeResult.CREATED

    async def test_embedded_reference_is_interpolated(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        dns = ResourceSpec(
            id="dns",
            kind="dns-record",
            inputs={"name": "*.k8s", "value": "{{outputs.cluster.id}}.k8s.civo.com"},
        )

        summary = await engine.apply(_graph(_manifest(extra=(dns,)), memory_providers))

        assert summary.stages[-1] == ["dns"]
        state = await state_store.get("dns")
        assert state is not None
        assert state.inputs["value"] == "cluster-1.k8s.civo.com"

    async def test_orphans_are_deleted(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        smaller = Manifest(resources=[ResourceSpec(id="net", kind="network", inputs={"label": "main"})])

        summary = await engine.apply(_graph(smaller, memory_providers))

        assert summary.success
        assert summary.result_of("net") == OutcomeResult.UNCHANGED
        assert summary.ids_with(OutcomeResult.DELETED) == ["cluster", "fw"]
        assert summary.stages == [["net"], ["cluster"], ["fw"]]
        assert list(await state_store.load()) == ["net"]
        assert _provider(memory_providers, "cluster").objects == {}

    async def test_kind_change_replaces_object(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        first = Manifest(resources=[ResourceSpec(id="x", kind="network", inputs={"label": "x"})])
        await engine.apply(_graph(first, memory_providers))
        shared_calls.clear()
        second = Manifest(resources=[ResourceSpec(id="x", kind="namespace", inputs={"name": "x"})])

        summary = await engine.apply(_graph(second, memory_providers))

        assert summary.success
        assert summary.outcomes["x"].action == ChangeAction.CREATE
        assert shared_calls == [("delete", "x"), ("create", "x")]
        assert _provider(memory_providers, "network").objects == {}
        assert "x" in _provider(memory_providers, "namespace").objects
        state = await state_store.get("x")
        assert state is not None
        assert state.kind == "namespace"

    async def test_failed_kind_replacement_keeps_old_record(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        first = Manifest(resources=[ResourceSpec(id="x", kind="network", inputs={"label": "x"})])
        await engine.apply(_graph(first, memory_providers))
        network = _provider(memory_providers, "network")
        network.fail_on.add("x")
        second = Manifest(resources=[ResourceSpec(id="x", kind="namespace", inputs={"name": "x"})])

        failed = await engine.apply(_graph(second, memory_providers))

        assert failed.result_of("x") == OutcomeResult.FAILED
        assert _provider(memory_providers, "namespace").calls == []
        state = await state_store.get("x")
        assert state is not None
        assert state.kind == "network"
        assert state.outputs["id"] == network.objects["x"]["id"]

        network.fail_on.clear()
        retried = await engine.apply(_graph(second, memory_providers))

        assert retried.result_of("x") == OutcomeResult.CREATED
        assert network.objects == {}

    async def test_plan_shows_kind_change_as_create(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        first = Manifest(resources=[ResourceSpec(id="x", kind="network", inputs={"label": "x"})])
        await engine.apply(_graph(first, memory_providers))
        second = Manifest(resources=[ResourceSpec(id="x", kind="namespace", inputs={"name": "x"})])

        plan = await engine.plan(_graph(second, memory_providers))

        assert plan.changes["x"].action == ChangeAction.CREATE

    async def test_refresh_recreates_drifted_resource(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        _provider(memory_providers, "firewall").objects.clear()

        plain = await engine.apply(_graph(_manifest(), memory_providers))
        assert plain.result_of("fw") == OutcomeResult.UNCHANGED

        refreshed = await engine.apply(_graph(_manifest(), memory_providers), refresh=True)
        assert refreshed.result_of("fw") == OutcomeResult.CREATED
        assert refreshed.result_of("net") == OutcomeResult.UNCHANGED
        assert "fw" in _provider(memory_providers, "firewall").objects

    async def test_workers_bound_concurrency(self, state_store: StateStore) -> None:
        class CountingProvider(InMemoryProvider):
            def __init__(self) -> None:
                super().__init__("network")
                self.active = 0
                self.peak = 0

            async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
                self.active += 1
                self.peak = max(self.peak, self.active)
                try:
                    await asyncio.sleep(0.02)
                    return await super().create(spec)
                finally:
                    self.active -= 1

        provider = CountingProvider()
        providers = ProviderRegistry()
        providers.register(provider)
        manifest = Manifest(resources=[
            ResourceSpec(id=f"net{i}", kind="network", inputs={"label": f"l{i}"}) for i in range(6)
        ])
        engine = ReconciliationEngine(providers, state_store, max_workers=2)

        summary = await engine.apply(_graph(manifest, providers))

        assert summary.success
        assert summary.stages == [[f"net{i}" for i in range(6)]]
        assert provider.peak == 2

    async def test_cancel_stops_the_run(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        _provider(memory_providers, "network").delay_seconds = 1.0

        task = asyncio.create_task(engine.apply(_graph(_manifest(), memory_providers)))
        await asyncio.sleep(0.1)
        engine.cancel()
        summary = await task

        assert summary.cancelled
        assert not summary.success
        assert summary.ids_with(OutcomeResult.CANCELLED) == ["cluster", "fw", "net"]
        assert _provider(memory_providers, "firewall").calls == []
        net = await state_store.get("net")
        assert net is not None
        assert net.status == ResourceStatus.PENDING


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.asyncio
class TestPlan:
    async def test_fresh_plan_creates_everything(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        plan = await engine.plan(_graph(_manifest(), memory_providers))

        assert plan.has_changes
        assert plan.counts() == {"create": 3, "update": 0, "delete": 0, "noop": 0}
        assert plan.changes["fw"].diff["network_id"] == (None, UNKNOWN_OUTPUT)
        assert plan.changes["cluster"].stage == 2
        assert shared_calls == []

    async def test_plan_after_apply(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))

        unchanged = await engine.plan(_graph(_manifest(), memory_providers))
        assert not unchanged.has_changes

        changed = await engine.plan(_graph(_manifest(cluster_name="bigger"), memory_providers))
        assert changed.action_of("cluster") == ChangeAction.UPDATE
        assert changed.changes["cluster"].diff == {"name": ("k3s", "bigger")}
        assert changed.action_of("net") == ChangeAction.NOOP

    async def test_plan_reports_orphans(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        smaller = Manifest(resources=[ResourceSpec(id="net", kind="network", inputs={"label": "main"})])

        plan = await engine.plan(_graph(smaller, memory_providers))

        assert plan.action_of("fw") == ChangeAction.DELETE
        assert plan.action_of("cluster") == ChangeAction.DELETE
        assert plan.to_dict()["counts"]["delete"] == 2


# ---------------------------------------------------------------------------
# Destroy
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.asyncio
class TestDestroy:
    async def test_reverse_order(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        shared_calls.clear()

        summary = await engine.destroy()

        assert summary.success
        assert summary.stages == [["cluster"], ["fw"], ["net"]]
        assert shared_calls == [("delete", "cluster"), ("delete", "fw"), ("delete", "net")]
        assert await state_store.load() == {}

    async def test_destroy_with_manifest_graph(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))

        summary = await engine.destroy(graph=_graph(_manifest(), memory_providers))

        assert summary.ids_with(OutcomeResult.DELETED) == ["cluster", "fw", "net"]
        assert await state_store.load() == {}

    async def test_manifest_graph_still_deletes_undeclared_resources(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
        shared_calls: list[tuple[str, str]],
    ) -> None:
        net = ResourceSpec(id="net", kind="network", inputs={"label": "main"})
        dns = ResourceSpec(
            id="dns", kind="dns-record", inputs={"domain_id": "d-1", "value": "{{outputs.net.id}}"}
        )
        await engine.apply(_graph(Manifest(resources=[net, dns]), memory_providers))
        shared_calls.clear()

        summary = await engine.destroy(graph=_graph(Manifest(resources=[net]), memory_providers))

        assert summary.success
        assert summary.stages == [["dns"], ["net"]]
        assert shared_calls == [("delete", "dns"), ("delete", "net")]
        assert await state_store.load() == {}
        assert _provider(memory_providers, "dns-record").objects == {}

    async def test_failed_undeclared_delete_blocks_its_dependency(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        net = ResourceSpec(id="net", kind="network", inputs={"label": "main"})
        dns = ResourceSpec(
            id="dns", kind="dns-record", inputs={"domain_id": "d-1", "value": "{{outputs.net.id}}"}
        )
        await engine.apply(_graph(Manifest(resources=[net, dns]), memory_providers))
        _provider(memory_providers, "dns-record").fail_on.add("dns")

        summary = await engine.destroy(graph=_graph(Manifest(resources=[net]), memory_providers))

        assert not summary.success
        assert summary.result_of("dns") == OutcomeResult.FAILED
        assert summary.result_of("net") == OutcomeResult.BLOCKED
        assert sorted(await state_store.load()) == ["dns", "net"]

    async def test_target_includes_dependents(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))

        summary = await engine.destroy(targets=["fw"])

        assert summary.ids_with(OutcomeResult.DELETED) == ["cluster", "fw"]
        assert list(await state_store.load()) == ["net"]

    async def test_unknown_target(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ResourceNotFoundError):
            await engine.destroy(targets=["ghost"])

    async def test_failed_delete_blocks_dependencies(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        _provider(memory_providers, "cluster").fail_on.add("cluster")

        summary = await engine.destroy()

        assert summary.result_of("cluster") == OutcomeResult.FAILED
        assert summary.result_of("fw") == OutcomeResult.BLOCKED
        assert summary.result_of("net") == OutcomeResult.BLOCKED
        assert summary.outcomes["net"].blocked_by == "cluster"
        states = await state_store.load()
        assert states["cluster"].status == ResourceStatus.FAILED
        assert states["net"].status == ResourceStatus.CREATED

    async def test_already_absent_object_counts_as_deleted(
        self,
        engine: ReconciliationEngine,
        memory_providers: ProviderRegistry,
        state_store: StateStore,
    ) -> None:
        await engine.apply(_graph(_manifest(), memory_providers))
        for provider in memory_providers.list():
            assert isinstance(provider, InMemoryProvider)
            provider.objects.clear()

        summary = await engine.destroy()

        assert summary.success
        assert await state_store.load() == {}

    async def test_destroy_empty_state(self, engine: ReconciliationEngine) -> None:
        summary = await engine.destroy()
        assert summary.success
        assert summary.outcomes == {}
