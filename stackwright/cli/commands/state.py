"""CLI — Inspect the state database."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.table import Table

from stackwright.cli._common import EXIT_FAILED, console, run_or_exit, short, state_path
from stackwright.config import get_settings
from stackwright.orchestration.state import ResourceState, StateStore

app = typer.Typer(help="Inspect recorded resource state.")


async def _load(path: Path) -> dict[str, ResourceState]:
    async with StateStore(path) as store:
        return await store.load()


@app.command("list")
def list_states(
    state: Path | None = typer.Option(None, "--state", help="State database (default from config)."),
    simulate: bool = typer.Option(False, "--simulate", help="Read the simulated state database."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """List every resource recorded in the state database."""
    settings = get_settings()
    states = run_or_exit(_load(state_path(settings, state, simulate)))

    if json_output:
        typer.echo(json.dumps([s.to_dict() for s in states.values()], indent=2, default=str))
        return

    table = Table(title="Resources")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Depends on")
    table.add_column("Error")

    for s in states.values():
        table.add_row(
            s.id,
            s.kind,
            s.status.value,
            ", ".join(s.dependencies) or "-",
            short(s.error or "", 60),
        )
    console.print(table)


@app.command("show")
def show_state(
    resource_id: str = typer.Argument(help="Resource id to show."),
    state: Path | None = typer.Option(None, "--state", help="State database (default from config)."),
    simulate: bool = typer.Option(False, "--simulate", help="Read the simulated state database."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """Show the recorded inputs and outputs of one resource."""
    settings = get_settings()
    states = run_or_exit(_load(state_path(settings, state, simulate)))
    record = states.get(resource_id)
    if record is None:
        console.print(f"[red]No state recorded for '{resource_id}'.[/red]")
        raise typer.Exit(EXIT_FAILED)

    if json_output:
        typer.echo(json.dumps(record.to_dict(), indent=2, default=str))
        return

    console.print(f"[bold]Resource:[/bold] {record.id}")
    console.print(f"[bold]Kind:[/bold] {record.kind}")
    console.print(f"[bold]Status:[/bold] {record.status.value}")
    console.print(f"[bold]Inputs hash:[/bold] {record.inputs_hash or '-'}")
    if record.error:
        console.print(f"[bold]Error:[/bold] [red]{record.error}[/red]")
    _print_mapping("Inputs", record.inputs)
    _print_mapping("Outputs", record.outputs)


def _print_mapping(title: str, values: dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in sorted(values.items()):
        table.add_row(key, short(value, 80))
    console.print(table)
