"""CLI — Provider inspection commands."""

from __future__ import annotations

import json

import typer
from rich.table import Table

from stackwright.cli._common import console
from stackwright.config import get_settings
from stackwright.providers import build_provider_registry

app = typer.Typer(help="Inspect the registered provider adapters.")


@app.command("list")
def list_providers(
    simulate: bool = typer.Option(False, "--simulate", help="Show the in-memory stand-ins."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """List every resource kind that can be reconciled."""
    registry = build_provider_registry(get_settings(), simulate=simulate)
    described = registry.describe()

    if json_output:
        typer.echo(json.dumps(described, indent=2))
        return

    table = Table(title="Registered Providers")
    table.add_column("Kind", style="cyan")
    table.add_column("Version")
    table.add_column("Required inputs")
    table.add_column("Outputs")
    table.add_column("Description")

    for p in described:
        table.add_row(
            p["kind"],
            p["version"],
            ", ".join(p["required_inputs"]) or "-",
            ", ".join(p["outputs"]) or "-",
            p["description"],
        )
    console.print(table)
