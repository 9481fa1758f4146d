"""Orchestration layer — Run outcomes and plans.

``RunSummary`` is what ``apply`` and ``destroy`` return; ``Plan`` is what
``plan`` returns.  Both serialise to plain dicts for ``--json`` output.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from stackwright.manifest.models import ChangeAction, OutcomeResult

_SUCCESS_RESULTS = frozenset({
    OutcomeResult.CREATED,
    OutcomeResult.UPDATED,
    OutcomeResult.UNCHANGED,
    OutcomeResult.DELETED,
})


@dataclass
class ResourceOutcome:
    """Terminal result of one resource within a run."""

    id: str
    kind: str
    result: OutcomeResult
    action: ChangeAction | None = None
    stage: int = 0
    error: str | None = None
    blocked_by: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.result in _SUCCESS_RESULTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "action": self.action.value if self.action else None,
            "result": self.result.value,
            "stage": self.stage,
            "error": self.error,
            "blocked_by": self.blocked_by,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class RunSummary:
    run_id: str
    operation: str
    stages: list[list[str]] = field(default_factory=list)
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    cancelled: bool = False

    def record(self, outcome: ResourceOutcome) -> None:
        self.outcomes[outcome.id] = outcome

    def result_of(self, resource_id: str) -> OutcomeResult | None:
        outcome = self.outcomes.get(resource_id)
        return outcome.result if outcome else None

    def ids_with(self, result: OutcomeResult) -> list[str]:
        return sorted(rid for rid, o in self.outcomes.items() if o.result == result)

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self.outcomes.values():
            counts[outcome.result.value] = counts.get(outcome.result.value, 0) + 1
        return counts

    @property
    def success(self) -> bool:
        """True when no resource failed, was blocked or was cancelled."""
        return not self.cancelled and all(o.succeeded for o in self.outcomes.values())

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "operation": self.operation,
            "success": self.success,
            "cancelled": self.cancelled,
            "stages": self.stages,
            "counts": self.counts(),
            "duration_seconds": round(self.duration_seconds, 3),
            "resources": [
                o.to_dict()
                for o in sorted(self.outcomes.values(), key=lambda o: (o.stage, o.id))
            ],
        }


@dataclass
class PlannedChange:
    """What ``apply`` would do to one resource."""

    id: str
    kind: str
    action: ChangeAction
    stage: int
    diff: dict[str, tuple[Any, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "action": self.action.value,
            "stage": self.stage,
            "diff": {k: {"old": old, "new": new} for k, (old, new) in self.diff.items()},
        }


@dataclass
class Plan:
    stages: list[list[str]] = field(default_factory=list)
    changes: dict[str, PlannedChange] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NOOP for c in self.changes.values())

    def action_of(self, resource_id: str) -> ChangeAction:
        return self.changes[resource_id].action

    def counts(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes.values():
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": self.stages,
            "counts": self.counts(),
            "has_changes": self.has_changes,
            "changes": [c.to_dict() for c in self.changes.values()],
        }
