"""Orchestration layer — registry, dependency graph, state store and engine."""

from stackwright.orchestration.engine import (
    ReconciliationEngine,
    compute_inputs_hash,
    decide_action,
    diff_inputs,
)
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.results import Plan, PlannedChange, ResourceOutcome, RunSummary
from stackwright.orchestration.state import ResourceState, StateStore

__all__ = [
    "DependencyGraph",
    "Plan",
    "PlannedChange",
    "ReconciliationEngine",
    "ResourceOutcome",
    "ResourceRegistry",
    "ResourceState",
    "RunSummary",
    "StateStore",
    "compute_inputs_hash",
    "decide_action",
    "diff_inputs",
]
