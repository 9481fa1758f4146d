"""CLI — plan, apply and destroy."""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.table import Table

from stackwright.cli._common import (
    EXIT_FAILED,
    build_graph,
    console,
    run_or_exit,
    short,
    state_path,
    with_engine,
)
from stackwright.config import get_settings
from stackwright.manifest.models import ChangeAction, OutcomeResult
from stackwright.orchestration.engine import ReconciliationEngine
from stackwright.orchestration.results import Plan, RunSummary
from stackwright.providers.registry import ProviderRegistry

_ACTION_STYLE = {
    ChangeAction.CREATE: "green",
    ChangeAction.UPDATE: "yellow",
    ChangeAction.DELETE: "red",
    ChangeAction.NOOP: "dim",
}

_RESULT_STYLE = {
    OutcomeResult.CREATED: "green",
    OutcomeResult.UPDATED: "yellow",
    OutcomeResult.UNCHANGED: "dim",
    OutcomeResult.DELETED: "red",
    OutcomeResult.FAILED: "bold red",
    OutcomeResult.BLOCKED: "magenta",
    OutcomeResult.CANCELLED: "magenta",
}

_STATE_HELP = "State database (default from config)."
_SIMULATE_HELP = "Use in-memory providers instead of real systems."


def plan_command(
    manifest: Path = typer.Argument(help="Path to the manifest (YAML or JSON)."),
    state: Path | None = typer.Option(None, "--state", help=_STATE_HELP),
    simulate: bool = typer.Option(False, "--simulate", help=_SIMULATE_HELP),
    json_output: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
) -> None:
    """Show what apply would change, without calling any provider."""
    settings = get_settings()

    async def _plan(engine: ReconciliationEngine, providers: ProviderRegistry) -> Plan:
        return await engine.plan(build_graph(manifest, providers))

    plan = run_or_exit(with_engine(settings, state_path(settings, state, simulate), simulate, _plan))

    if json_output:
        typer.echo(json.dumps(plan.to_dict(), indent=2, default=str))
        return
    _render_plan(plan)


def apply_command(
    manifest: Path = typer.Argument(help="Path to the manifest (YAML or JSON)."),
    state: Path | None = typer.Option(None, "--state", help=_STATE_HELP),
    simulate: bool = typer.Option(False, "--simulate", help=_SIMULATE_HELP),
    refresh: bool = typer.Option(
        False, "--refresh", help="Read unchanged resources and recreate any that disappeared."
    ),
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="Maximum resources reconciled concurrently."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", min=1.0, help="Timeout in seconds for each provider call."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON."),
) -> None:
    """Reconcile every declared resource, stage by stage."""
    settings = get_settings()

    async def _apply(engine: ReconciliationEngine, providers: ProviderRegistry) -> RunSummary:
        graph = build_graph(manifest, providers)
        return await engine.apply(graph, refresh=refresh)

    summary = run_or_exit(
        with_engine(
            settings,
            state_path(settings, state, simulate),
            simulate,
            _apply,
            workers=workers,
            timeout=timeout,
        )
    )
    _finish(summary, json_output)


def destroy_command(
    manifest: Path | None = typer.Argument(
        None, help="Optional manifest; without it the order comes from stored state."
    ),
    state: Path | None = typer.Option(None, "--state", help=_STATE_HELP),
    target: list[str] | None = typer.Option(
        None, "--target", help="Destroy only this resource and its dependents. Repeatable."
    ),
    simulate: bool = typer.Option(False, "--simulate", help=_SIMULATE_HELP),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON."),
) -> None:
    """Delete resources in exactly the reverse of the apply order."""
    settings = get_settings()
    db_path = state_path(settings, state, simulate)

    if not yes:
        scope = ", ".join(target) if target else "ALL resources"
        typer.confirm(f"Destroy {scope} recorded in {db_path}?", abort=True)

    async def _destroy(engine: ReconciliationEngine, providers: ProviderRegistry) -> RunSummary:
        graph = build_graph(manifest, providers) if manifest is not None else None
        return await engine.destroy(graph=graph, targets=target or None)

    summary = run_or_exit(with_engine(settings, db_path, simulate, _destroy))
    _finish(summary, json_output)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_plan(plan: Plan) -> None:
    table = Table(title="Plan")
    table.add_column("Stage", justify="right")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind")
    table.add_column("Action")
    table.add_column("Changes")

    for change in plan.changes.values():
        style = _ACTION_STYLE[change.action]
        table.add_row(
            str(change.stage),
            change.id,
            change.kind,
            f"[{style}]{change.action.value}[/{style}]",
            ", ".join(change.diff) or "-",
        )
    console.print(table)

    for change in plan.changes.values():
        if not change.diff or change.action == ChangeAction.DELETE:
            continue
        console.print(f"[bold]{change.id}[/bold] ({change.action.value})")
        for key, (old, new) in change.diff.items():
            console.print(f"  {key}: {short(old, 40)} -> {short(new, 40)}")

    counts = plan.counts()
    console.print(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete, {counts['noop']} unchanged."
    )


def _finish(summary: RunSummary, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        _render_summary(summary)
    if not summary.success:
        raise typer.Exit(EXIT_FAILED)


def _render_summary(summary: RunSummary) -> None:
    table = Table(title=f"{summary.operation.capitalize()} run {summary.run_id}")
    table.add_column("Stage", justify="right")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Seconds", justify="right")
    table.add_column("Error")

    for outcome in sorted(summary.outcomes.values(), key=lambda o: (o.stage, o.id)):
        style = _RESULT_STYLE[outcome.result]
        table.add_row(
            str(outcome.stage),
            outcome.id,
            outcome.kind,
            f"[{style}]{outcome.result.value}[/{style}]",
            str(outcome.attempts),
            f"{outcome.duration_seconds:.1f}",
            short(outcome.error or "", 80),
        )
    console.print(table)

    counts = ", ".join(f"{n} {result}" for result, n in sorted(summary.counts().items()))
    if summary.success:
        console.print(f"[green]{summary.operation.capitalize()} complete:[/green] {counts or 'nothing to do'}")
    else:
        console.print(f"[red]{summary.operation.capitalize()} finished with problems:[/red] {counts}")
