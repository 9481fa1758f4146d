"""Orchestration layer — Reconciliation engine.

The ReconciliationEngine drives a run over a validated DependencyGraph:
  1. Load the stored state of every resource
  2. For each stage, in order, reconcile its resources concurrently
     (bounded by ``max_workers``):
     a. Block resources whose dependencies failed in this run
     b. Resolve {{outputs.X.Y}} references against known outputs
     c. Hash the resolved inputs and pick create / update / noop
     d. Call the provider (timeout + retries on transient errors)
     e. Persist ``created`` + outputs, or ``failed`` + error
  3. Delete orphans: resources in the store that are no longer declared
  4. Return a RunSummary

Blocked semantics:
  When a resource fails, every transitive dependent is reported as BLOCKED
  without any provider call or state write.  Independent resources in the
  same and later stages are still reconciled.

Destroy deletes every stored resource in exact reverse stage order.  A
failed delete blocks the resources it depends on, since deleting them would
strand the failed one.

A resource whose kind changed is replaced: the old object is deleted through
the old kind's provider before the new one is created.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, TypeVar

from stackwright.config import DEFAULT_RESOURCE_TIMEOUT_SECONDS, RetryConfig
from stackwright.exceptions import (
    BlockedError,
    ExecutionTimeoutError,
    ProviderError,
    ProviderResourceNotFoundError,
    ResourceNotFoundError,
    StackwrightError,
    StateStoreError,
)
from stackwright.logging import bind_run_context, clear_run_context, get_logger
from stackwright.manifest.constants import UNKNOWN_OUTPUT
from stackwright.manifest.models import ChangeAction, OutcomeResult, ResourceStatus
from stackwright.manifest.references import ReferenceResolver
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.results import Plan, PlannedChange, ResourceOutcome, RunSummary
from stackwright.orchestration.state import ResourceState, StateStore
from stackwright.providers.base import ResolvedSpec

if TYPE_CHECKING:
    from stackwright.config import Settings
    from stackwright.providers.base import BaseProvider
    from stackwright.providers.registry import ProviderRegistry

log = get_logger(__name__)

T = TypeVar("T")

_HALTED = frozenset({OutcomeResult.FAILED, OutcomeResult.BLOCKED, OutcomeResult.CANCELLED})


def compute_inputs_hash(kind: str, inputs: dict[str, Any]) -> str:
    """sha256 of the canonical JSON form of *kind* and resolved *inputs*."""
    canonical = json.dumps(
        {"kind": kind, "inputs": inputs},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


def diff_inputs(old: dict[str, Any], new: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Return ``{key: (old, new)}`` for every top-level input that differs."""
    return {
        key: (old.get(key), new.get(key))
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


def decide_action(
    prior: ResourceState | None, inputs_hash: str, kind: str | None = None
) -> ChangeAction:
    """Choose the provider operation for a declared resource.

    A resource whose *kind* differs from the stored one is replaced: its old
    object is deleted through the old kind's provider, then it is created.
    """
    if prior is None or prior.status in (ResourceStatus.PENDING, ResourceStatus.DELETED):
        return ChangeAction.CREATE
    if kind is not None and prior.kind != kind:
        return ChangeAction.CREATE
    if prior.status == ResourceStatus.FAILED:
        return ChangeAction.UPDATE if prior.outputs else ChangeAction.CREATE
    if prior.inputs_hash != inputs_hash:
        return ChangeAction.UPDATE
    return ChangeAction.NOOP


class ReconciliationEngine:
    """Reconciles declared resources against providers and the state store.

    Usage::

        engine = ReconciliationEngine(providers, store, max_workers=4)
        summary = await engine.apply(graph)
        if not summary.success:
            ...
    """

    def __init__(
        self,
        providers: "ProviderRegistry",
        store: StateStore,
        max_workers: int = 4,
        resource_timeout_seconds: float = DEFAULT_RESOURCE_TIMEOUT_SECONDS,
        retry: RetryConfig | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._providers = providers
        self._store = store
        self._max_workers = max_workers
        self._timeout = resource_timeout_seconds
        self._retry = retry or RetryConfig()
        self._cancel_event = asyncio.Event()
        self._in_flight: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(
        cls, providers: "ProviderRegistry", store: StateStore, settings: "Settings"
    ) -> "ReconciliationEngine":
        return cls(
            providers,
            store,
            max_workers=settings.engine.max_workers,
            resource_timeout_seconds=settings.engine.resource_timeout_seconds,
            retry=settings.engine.retry,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop starting new resources and cancel in-flight provider calls."""
        if self._cancel_event.is_set():
            return
        self._cancel_event.set()
        for task in list(self._in_flight):
            task.cancel()
        log.warning("run_cancel_requested", in_flight=len(self._in_flight))

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    async def plan(self, graph: DependencyGraph) -> Plan:
        """Compute the changes ``apply`` would make, without provider calls."""
        states = await self._store.load()
        known = _known_outputs(states)
        resolver = ReferenceResolver(outputs=known, unknown_placeholder=UNKNOWN_OUTPUT)
        plan = Plan(stages=graph.stages())

        for index, stage in enumerate(plan.stages):
            for rid in stage:
                spec = graph.spec(rid)
                prior = states.get(rid)
                resolved = resolver.resolve(spec.inputs)
                action = decide_action(prior, compute_inputs_hash(spec.kind, resolved), spec.kind)
                if action != ChangeAction.NOOP:
                    # Outputs of a changing resource are only known after apply.
                    known.pop(rid, None)
                old_inputs = prior.inputs if prior and prior.outputs else {}
                plan.changes[rid] = PlannedChange(
                    id=rid,
                    kind=spec.kind,
                    action=action,
                    stage=index,
                    diff=diff_inputs(old_inputs, resolved) if action != ChangeAction.NOOP else {},
                )

        orphan_stage = len(plan.stages)
        for rid in sorted(set(states) - set(graph.ids())):
            plan.changes[rid] = PlannedChange(
                id=rid,
                kind=states[rid].kind,
                action=ChangeAction.DELETE,
                stage=orphan_stage,
                diff={key: (value, None) for key, value in sorted(states[rid].inputs.items())},
            )
        return plan

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, graph: DependencyGraph, refresh: bool = False) -> RunSummary:
        """Reconcile every resource of *graph*, then delete orphans.

        Provider failures never raise; they are recorded in the summary.
        """
        summary = RunSummary(run_id=_new_run_id(), operation="apply", stages=graph.stages())
        self._cancel_event.clear()
        bind_run_context(run_id=summary.run_id)
        log.info("apply_started", resources=len(graph), stages=len(summary.stages))
        try:
            states = await self._store.load()
            outputs = _known_outputs(states)

            for index, stage in enumerate(summary.stages):
                log.info("stage_started", stage=index, resources=stage)
                await self._run_stage(
                    stage,
                    lambda rid, i=index: self._apply_one(rid, i, graph, states, outputs, refresh),
                    lambda rid: _failed_ancestor(graph.ancestors(rid), summary),
                    index,
                    graph,
                    summary,
                )

            orphans = [states[rid] for rid in sorted(set(states) - set(graph.ids()))]
            if orphans:
                log.info("orphans_found", resources=[s.id for s in orphans])
                orphan_graph = DependencyGraph.from_state(orphans)
                base = len(summary.stages)
                summary.stages.extend(orphan_graph.reverse_stages())
                await self._delete_stages(orphan_graph, orphan_graph.ids(), states, summary, base)
        finally:
            summary.finished_at = time.time()
            summary.cancelled = self.cancelled
            log.info(
                "apply_finished",
                success=summary.success,
                counts=summary.counts(),
                duration_seconds=round(summary.duration_seconds, 3),
            )
            clear_run_context()
        return summary

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    async def destroy(
        self,
        graph: DependencyGraph | None = None,
        targets: Iterable[str] | None = None,
    ) -> RunSummary:
        """Delete stored resources in reverse stage order.

        Without *graph* the order comes from stored dependencies alone.  With
        *graph*, stored resources it does not declare are deleted first, then
        the declared ones in reverse graph order.  With *targets*, only those
        ids and their transitive dependents are deleted.

        Raises:
            ResourceNotFoundError: A target has no stored state.
        """
        summary = RunSummary(run_id=_new_run_id(), operation="destroy")
        self._cancel_event.clear()
        bind_run_context(run_id=summary.run_id)
        try:
            states = await self._store.load()
            stored = DependencyGraph.from_state(states.values())
            if graph is None:
                graph = stored
            # Stored resources the manifest no longer declares. No declared
            # resource can depend on them, so they are deleted first.
            undeclared = DependencyGraph.from_state(
                [state for rid, state in states.items() if rid not in graph]
            )

            if targets:
                selected: set[str] = set()
                for target in targets:
                    if target not in states:
                        raise ResourceNotFoundError(target)
                    selected.add(target)
                    selected |= stored.descendants(target)
                    if target in graph:
                        selected |= graph.descendants(target)
            else:
                selected = set(states)
            selected &= set(states)

            phases = [undeclared, graph]
            stages = [
                [rid for rid in stage if rid in selected]
                for phase in phases
                for stage in phase.reverse_stages()
            ]
            summary.stages = [stage for stage in stages if stage]
            log.info("destroy_started", resources=len(selected), stages=len(summary.stages))
            index = 0
            for phase in phases:
                index = await self._delete_stages(phase, selected, states, summary, index, stored)
        finally:
            summary.finished_at = time.time()
            summary.cancelled = self.cancelled
            log.info("destroy_finished", success=summary.success, counts=summary.counts())
            clear_run_context()
        return summary

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        stage: list[str],
        work: Callable[[str], Awaitable[ResourceOutcome]],
        blocker_of: Callable[[str], str | None],
        index: int,
        graph: DependencyGraph,
        summary: RunSummary,
        action: ChangeAction | None = None,
    ) -> None:
        semaphore = asyncio.Semaphore(self._max_workers)

        async def run_one(rid: str) -> None:
            if self.cancelled:
                return
            blocker = blocker_of(rid)
            if blocker is not None:
                blocked = BlockedError(rid, blocker)
                summary.record(ResourceOutcome(
                    id=rid, kind=graph.kind(rid), result=OutcomeResult.BLOCKED,
                    action=action, stage=index, blocked_by=blocker, error=blocked.message,
                ))
                log.warning("resource_blocked", resource_id=rid, blocked_by=blocker)
                return
            async with semaphore:
                if self.cancelled:
                    return
                summary.record(await work(rid))

        tasks = {rid: asyncio.create_task(run_one(rid)) for rid in stage}
        self._in_flight.update(tasks.values())
        try:
            results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            self._in_flight.difference_update(tasks.values())

        for rid, result in zip(tasks, results):
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                raise result
            if rid not in summary.outcomes:
                summary.record(ResourceOutcome(
                    id=rid, kind=graph.kind(rid), result=OutcomeResult.CANCELLED,
                    action=action, stage=index, error="run cancelled",
                ))
                log.warning("resource_cancelled", resource_id=rid)

    async def _apply_one(
        self,
        rid: str,
        index: int,
        graph: DependencyGraph,
        states: dict[str, ResourceState],
        outputs: dict[str, dict[str, Any]],
        refresh: bool,
    ) -> ResourceOutcome:
        bind_run_context(resource_id=rid)
        spec = graph.spec(rid)
        prior = states.get(rid)
        dependencies = graph.dependencies(rid)
        started = time.monotonic()
        outcome = ResourceOutcome(id=rid, kind=spec.kind, result=OutcomeResult.FAILED, stage=index)
        attempts = [0]
        resolved: dict[str, Any] = {}
        record_kind = spec.kind

        try:
            provider = self._providers.get(spec.kind)
            resolved = ReferenceResolver(outputs=outputs).resolve(spec.inputs)
            inputs_hash = compute_inputs_hash(spec.kind, resolved)
            resolved_spec = ResolvedSpec(id=rid, kind=spec.kind, inputs=resolved)
            action = decide_action(prior, inputs_hash, spec.kind)
            observed: dict[str, Any] | None = None

            if prior is not None and prior.kind != spec.kind:
                log.info(
                    "resource_replacing", resource_id=rid, old_kind=prior.kind, kind=spec.kind
                )
                if prior.status != ResourceStatus.DELETED:
                    # Failures here are recorded under the old kind so the next run retries.
                    record_kind = prior.kind
                    old_provider = self._providers.get(prior.kind)
                    try:
                        await self._call(rid, "delete", attempts, old_provider.delete, rid, prior)
                    except ProviderResourceNotFoundError:
                        log.info("resource_already_absent", resource_id=rid, kind=prior.kind)
                    record_kind = spec.kind
                prior = None

            if action == ChangeAction.NOOP and prior is not None:
                if refresh:
                    try:
                        observed = await self._call(rid, "read", attempts, provider.read, rid, prior)
                    except ProviderResourceNotFoundError:
                        log.warning("resource_drifted", resource_id=rid)
                        action = ChangeAction.CREATE
                if action == ChangeAction.NOOP:
                    new_outputs = observed if observed is not None else prior.outputs
                    if observed is not None or sorted(prior.dependencies) != dependencies:
                        prior.outputs = new_outputs
                        prior.dependencies = dependencies
                        await asyncio.shield(self._store.save(prior))
                    outputs[rid] = new_outputs
                    outcome.action = ChangeAction.NOOP
                    outcome.result = OutcomeResult.UNCHANGED
                    log.info("resource_unchanged", resource_id=rid)
                    return outcome

            if action == ChangeAction.UPDATE and prior is not None:
                try:
                    observed = await self._call(rid, "read", attempts, provider.read, rid, prior)
                except ProviderResourceNotFoundError:
                    log.warning("resource_missing_recreating", resource_id=rid)
                    action = ChangeAction.CREATE

            outcome.action = action
            if action == ChangeAction.CREATE:
                await asyncio.shield(self._store.save(ResourceState(
                    id=rid,
                    kind=spec.kind,
                    status=ResourceStatus.PENDING,
                    inputs=resolved,
                    dependencies=dependencies,
                    attempts=prior.attempts if prior else 0,
                )))
                new_outputs = await self._call(rid, "create", attempts, provider.create, resolved_spec)
                result = OutcomeResult.CREATED
            else:
                new_outputs = await self._call(
                    rid, "update", attempts, provider.update, resolved_spec, observed or {}
                )
                result = OutcomeResult.UPDATED

            new_outputs = dict(new_outputs or {})
            await asyncio.shield(self._store.save(ResourceState(
                id=rid,
                kind=spec.kind,
                status=ResourceStatus.CREATED,
                inputs_hash=inputs_hash,
                inputs=resolved,
                outputs=new_outputs,
                dependencies=dependencies,
                attempts=attempts[0],
            )))
            outputs[rid] = new_outputs
            outcome.result = result
            log.info(f"resource_{result.value}", resource_id=rid, attempts=attempts[0])

        except StateStoreError:
            raise
        except Exception as exc:
            await self._record_failure(
                rid, record_kind, prior, resolved, dependencies, attempts[0], exc
            )
            outcome.error = _error_text(exc)
        finally:
            outcome.attempts = attempts[0]
            outcome.duration_seconds = time.monotonic() - started
        return outcome

    async def _delete_stages(
        self,
        graph: DependencyGraph,
        selected: Iterable[str],
        states: dict[str, ResourceState],
        summary: RunSummary,
        base_index: int,
        stored: DependencyGraph | None = None,
    ) -> int:
        """Delete *selected* ids stage by stage; return the next stage index.

        A resource is blocked when anything depending on it, in *graph* or in
        the *stored* dependencies, failed to delete.
        """
        chosen = set(selected)
        index = base_index

        def dependents_of(rid: str) -> set[str]:
            found = graph.descendants(rid)
            if stored is not None and rid in stored:
                found |= stored.descendants(rid)
            return found & chosen

        for stage in graph.reverse_stages():
            ids = [rid for rid in stage if rid in chosen and rid in states]
            if not ids:
                continue
            log.info("stage_started", stage=index, resources=ids, operation="delete")
            await self._run_stage(
                ids,
                lambda rid, i=index: self._delete_one(rid, i, states[rid]),
                lambda rid: _failed_ancestor(dependents_of(rid), summary),
                index,
                graph,
                summary,
                action=ChangeAction.DELETE,
            )
            index += 1
        return index

    async def _delete_one(self, rid: str, index: int, state: ResourceState) -> ResourceOutcome:
        bind_run_context(resource_id=rid)
        started = time.monotonic()
        attempts = [0]
        outcome = ResourceOutcome(
            id=rid, kind=state.kind, result=OutcomeResult.FAILED,
            action=ChangeAction.DELETE, stage=index,
        )
        try:
            if state.status != ResourceStatus.DELETED:
                provider = self._providers.get(state.kind)
                try:
                    await self._call(rid, "delete", attempts, provider.delete, rid, state)
                except ProviderResourceNotFoundError:
                    log.info("resource_already_absent", resource_id=rid)
            await asyncio.shield(self._store.delete(rid))
            outcome.result = OutcomeResult.DELETED
            log.info("resource_deleted", resource_id=rid, attempts=attempts[0])
        except StateStoreError:
            raise
        except Exception as exc:
            state.status = ResourceStatus.FAILED
            state.error = _error_text(exc)
            state.attempts = attempts[0]
            await asyncio.shield(self._store.save(state))
            outcome.error = state.error
            log.error("resource_failed", resource_id=rid, operation="delete", error=state.error)
        finally:
            outcome.attempts = attempts[0]
            outcome.duration_seconds = time.monotonic() - started
        return outcome

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call(
        self,
        rid: str,
        operation: str,
        attempts: list[int],
        fn: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Invoke a provider operation with timeout and bounded retries.

        Transient provider errors and timeouts are retried with exponential
        backoff; permanent errors and not-found are raised at once.
        """
        attempt = 0
        while True:
            attempt += 1
            attempts[0] += 1
            try:
                return await asyncio.wait_for(fn(*args), timeout=self._timeout)
            except asyncio.TimeoutError:
                err: StackwrightError = ExecutionTimeoutError(rid, operation, self._timeout)
            except ProviderResourceNotFoundError:
                raise
            except ProviderError as exc:
                if not exc.transient:
                    raise
                err = exc

            if attempt >= self._retry.max_attempts or self.cancelled:
                raise err
            delay = self._retry.delay_for_attempt(attempt)
            log.warning(
                "resource_retry",
                resource_id=rid,
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=err.message,
            )
            await asyncio.sleep(delay)

    async def _record_failure(
        self,
        rid: str,
        kind: str,
        prior: ResourceState | None,
        resolved: dict[str, Any],
        dependencies: list[str],
        attempts: int,
        exc: Exception,
    ) -> None:
        has_object = prior is not None and bool(prior.outputs)
        state = ResourceState(
            id=rid,
            kind=kind,
            status=ResourceStatus.FAILED,
            inputs_hash=prior.inputs_hash if prior else None,
            inputs=prior.inputs if has_object and prior else resolved,
            outputs=prior.outputs if has_object and prior else {},
            dependencies=dependencies,
            error=_error_text(exc),
            attempts=attempts,
        )
        await asyncio.shield(self._store.save(state))
        log.error("resource_failed", resource_id=rid, error=state.error, attempts=attempts)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _known_outputs(states: dict[str, ResourceState]) -> dict[str, dict[str, Any]]:
    return {
        rid: dict(state.outputs)
        for rid, state in states.items()
        if state.status == ResourceStatus.CREATED
    }


def _failed_ancestor(candidates: Iterable[str], summary: RunSummary) -> str | None:
    """Return the first failed id among *candidates*, if any halted this run."""
    halted = sorted(rid for rid in candidates if summary.result_of(rid) in _HALTED)
    if not halted:
        return None
    failed = [rid for rid in halted if summary.result_of(rid) == OutcomeResult.FAILED]
    if failed:
        return failed[0]
    blocked = summary.outcomes[halted[0]]
    return blocked.blocked_by or halted[0]


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, StackwrightError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
