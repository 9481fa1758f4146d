"""Stackwright CLI — Entry point.

Usage:
    stackwright plan stack.yaml
    stackwright apply stack.yaml [--refresh] [--workers 8]
    stackwright destroy [stack.yaml] [--target cluster] --yes
    stackwright state list
    stackwright state show <resource_id>
    stackwright providers list

Exit codes: 0 success, 1 a resource failed or was blocked or cancelled,
2 configuration error (nothing was applied).
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.markup import escape

from stackwright.cli._common import EXIT_CONFIG, console
from stackwright.cli.commands import providers, run, state
from stackwright.config import LoggingConfig, Settings, override_settings
from stackwright.exceptions import ConfigurationError
from stackwright.logging import configure_logging

app = typer.Typer(
    name="stackwright",
    help="Stackwright — declarative resource orchestration for clusters and charts.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.command("plan")(run.plan_command)
app.command("apply")(run.apply_command)
app.command("destroy")(run.destroy_command)
app.add_typer(state.app, name="state")
app.add_typer(providers.app, name="providers")


@app.callback()
def main_callback(
    config: Path | None = typer.Option(None, "--config", help="Extra YAML config file."),
    log_level: str | None = typer.Option(
        None, "--log-level", help="debug, info, warning, error or critical."
    ),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json."),
) -> None:
    try:
        settings = Settings.load(config)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(exc.message)}")
        raise typer.Exit(EXIT_CONFIG)
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    overrides = {
        key: value.lower()
        for key, value in (("level", log_level), ("format", log_format))
        if value
    }
    if overrides:
        try:
            settings.logging = LoggingConfig.model_validate(
                {**settings.logging.model_dump(), **overrides}
            )
        except ValidationError as exc:
            console.print(f"[red]Configuration error:[/red] {exc.errors(include_url=False)[0]['msg']}")
            raise typer.Exit(EXIT_CONFIG)

    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )
    override_settings(settings)


if __name__ == "__main__":
    app()
