"""
CLI utility helpers — settings loading, registry wiring and output formatting.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from chicon.core.logging import configure_logging
from chicon.core.settings import RunnerSettings, find_config_file, load_settings
from chicon.execution.models import BatchReport, ExecutionResult, ExecutionState
from chicon.registry import HttpRegistryClient, RegistryClient, load_seed

console = Console()
err_console = Console(stderr=True)

_STATE_STYLE = {
    ExecutionState.COMPLETED: "green",
    ExecutionState.FAILED: "red",
    ExecutionState.TIMED_OUT: "yellow",
    ExecutionState.CANCELLED: "magenta",
}


# ── Settings / wiring ────────────────────────────────────────────────────


def load_cli_settings(config: str | None) -> RunnerSettings:
    """Resolve and load settings, then configure logging. Exits 2 on bad config."""
    path = find_config_file(config)
    if path is None:
        err_console.print("[yellow]No configuration file found, using defaults[/yellow]")
    try:
        settings = load_settings(path)
    except FileNotFoundError:
        err_console.print(f"[bold red]Error[/bold red]: configuration file not found: {path}")
        raise typer.Exit(code=2) from None
    except (tomllib.TOMLDecodeError, ValidationError) as exc:
        err_console.print(f"[bold red]Error[/bold red]: invalid configuration {path}:\n{exc}")
        raise typer.Exit(code=2) from None
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    return settings


def make_registry(settings: RunnerSettings, seed: Path | None = None) -> RegistryClient:
    """Seed file when given, otherwise the HTTP catalog from settings."""
    if seed is not None:
        try:
            return load_seed(seed)
        except (OSError, ValueError) as exc:
            err_console.print(f"[bold red]Error[/bold red]: cannot load seed {seed}: {exc}")
            raise typer.Exit(code=2) from None
    return HttpRegistryClient.from_settings(settings)


async def close_registry(registry: RegistryClient) -> None:
    if isinstance(registry, HttpRegistryClient):
        await registry.aclose()


# ── Output helpers ───────────────────────────────────────────────────────


def output_result(result: ExecutionResult, *, as_json: bool = False) -> None:
    """Render one execution result."""
    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return

    style = _STATE_STYLE.get(result.state, "white")
    _print_dict(
        {
            "request": result.request_id,
            "function": result.function_id,
            "repository": result.repository_id,
            "commit": result.commit.sha[:12] if result.commit else "",
            "state": f"[{style}]{result.state.value}[/{style}]",
            "exit code": result.exit_code,
            "duration": f"{result.duration_ms} ms",
            "truncated": result.truncated,
        },
        title="Execution",
    )
    if result.error is not None:
        err_console.print(f"[bold red]{result.error.kind}[/bold red]: {result.error.message}")
    if result.result_map:
        print_table(
            [{"key": key, "value": value} for key, value in result.result_map.items()],
            title="Results",
        )
    else:
        console.print("[dim]No results.[/dim]")


def output_report(report: BatchReport, *, as_json: bool = False) -> None:
    """Render a batch report as one row per execution plus state counts."""
    if as_json:
        console.print_json(json.dumps(report.to_dict(), default=str))
        return
    if not report.results:
        console.print("[dim]No functions to run.[/dim]")
        return
    rows = [
        {
            "function": result.function_id,
            "state": result.state.value,
            "exit": result.exit_code,
            "results": ", ".join(f"{k}={v}" for k, v in result.result_map.items()),
            "error": result.error.kind if result.error else "",
        }
        for result in report.results
    ]
    print_table(rows, title="Scan")
    counts = ", ".join(f"{state}: {count}" for state, count in sorted(report.counts.items()) if count)
    console.print(f"\n[dim]{counts}[/dim]")


# ── Table helpers ────────────────────────────────────────────────────────


def print_table(items: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in items[0]:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*(str(v) for v in item.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
