"""CLI — Helpers shared by the run, state and provider commands."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

import typer
from rich.console import Console
from rich.markup import escape

from stackwright.config import Settings
from stackwright.exceptions import ConfigurationError, StackwrightError
from stackwright.manifest.parser import load_manifest
from stackwright.orchestration.engine import ReconciliationEngine
from stackwright.orchestration.graph import DependencyGraph
from stackwright.orchestration.registry import ResourceRegistry
from stackwright.orchestration.state import StateStore
from stackwright.providers import build_provider_registry
from stackwright.providers.registry import ProviderRegistry

T = TypeVar("T")

console = Console()

EXIT_FAILED = 1
EXIT_CONFIG = 2


def state_path(settings: Settings, override: Path | None, simulate: bool) -> Path:
    """Resolve the state database for this invocation.

    Simulated runs keep their own file next to the real one so fake outputs
    never mix with real state.
    """
    if override is not None:
        return override
    path = settings.state.db_path
    if simulate:
        return path.with_name(f"{path.stem}.simulate{path.suffix}")
    return path


def build_graph(manifest_path: Path, providers: ProviderRegistry) -> DependencyGraph:
    manifest = load_manifest(manifest_path)
    return DependencyGraph.build(ResourceRegistry.from_manifest(manifest), providers)


async def with_engine(
    settings: Settings,
    state: Path,
    simulate: bool,
    fn: Callable[[ReconciliationEngine, ProviderRegistry], Awaitable[T]],
    workers: int | None = None,
    timeout: float | None = None,
) -> T:
    """Open the state store, build providers and run *fn* with an engine.

    SIGINT cancels the run instead of killing the process, so state writes
    in progress complete.
    """
    providers = build_provider_registry(settings, simulate=simulate)
    try:
        async with StateStore(state) as store:
            engine = ReconciliationEngine(
                providers,
                store,
                max_workers=workers or settings.engine.max_workers,
                resource_timeout_seconds=timeout or settings.engine.resource_timeout_seconds,
                retry=settings.engine.retry,
            )
            loop = asyncio.get_running_loop()
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(signal.SIGINT, engine.cancel)
            try:
                return await fn(engine, providers)
            finally:
                with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                    loop.remove_signal_handler(signal.SIGINT)
    finally:
        await providers.close()


def run_or_exit(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro*, mapping stackwright errors onto exit codes."""
    try:
        return asyncio.run(coro)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(exc.message)}")
        raise typer.Exit(EXIT_CONFIG)
    except StackwrightError as exc:
        console.print(f"[red]Error:[/red] {escape(exc.message)}")
        raise typer.Exit(EXIT_FAILED)


def short(value: Any, limit: int = 60) -> str:
    """Render *value* on one line, truncated for tables."""
    text = value if isinstance(value, str) else repr(value)
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 3] + "..."
