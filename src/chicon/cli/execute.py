"""
CLI: ``chicon exec`` / ``chicon scan`` / ``chicon functions``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from chicon.cli.utils import (
    close_registry,
    console,
    load_cli_settings,
    make_registry,
    output_report,
    output_result,
    print_table,
)
from chicon.core.errors import EngineError
from chicon.core.settings import RunnerSettings
from chicon.execution.models import BatchReport, ExecutionRequest, ExecutionResult
from chicon.execution.scheduler import ALL_FUNCTIONS, ExecutionScheduler
from chicon.models import Function

SeedOption = typer.Option(None, "--seed", help="Load definitions from a JSON seed file instead of the registry.")
TimeoutOption = typer.Option(None, "--timeout", "-t", min=0.001, help="Wall-clock limit in seconds.")
JsonOption = typer.Option(False, "--json", help="Print machine-readable JSON.")


def _config(ctx: typer.Context) -> str | None:
    return ctx.obj.get("config") if ctx.obj else None


async def _execute(settings: RunnerSettings, seed: Path | None, request: ExecutionRequest) -> ExecutionResult:
    registry = make_registry(settings, seed)
    try:
        async with ExecutionScheduler.from_settings(settings, registry) as scheduler:
            return await scheduler.run(request)
    finally:
        await close_registry(registry)


async def _scan(
    settings: RunnerSettings,
    seed: Path | None,
    repository_id: str,
    function_ids: list[str],
    timeout: float | None,
) -> BatchReport:
    registry = make_registry(settings, seed)
    try:
        async with ExecutionScheduler.from_settings(settings, registry) as scheduler:
            return await scheduler.scan(repository_id, function_ids, timeout=timeout)
    finally:
        await close_registry(registry)


async def _list_functions(settings: RunnerSettings, seed: Path | None) -> list[Function]:
    registry = make_registry(settings, seed)
    try:
        return await registry.list_functions()
    finally:
        await close_registry(registry)


def exec_command(
    ctx: typer.Context,
    function: str = typer.Option(..., "--function", "-f", help="Function id."),
    repository: str = typer.Option(..., "--repository", "-r", help="Repository id."),
    request_id: str | None = typer.Option(None, "--request-id", help="Explicit request id."),
    seed: Path | None = SeedOption,
    timeout: float | None = TimeoutOption,
    json_out: bool = JsonOption,
) -> None:
    """Run one function against one repository."""
    settings = load_cli_settings(_config(ctx))
    request = ExecutionRequest.from_dict({
        "functionId": function,
        "repositoryId": repository,
        "requestId": request_id,
        "timeout": timeout,
    })
    result = asyncio.run(_execute(settings, seed, request))
    output_result(result, as_json=json_out)
    if result.has_failed:
        raise typer.Exit(code=1)


def scan_command(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository id."),
    functions: list[str] | None = typer.Argument(None, help="Function ids, or '*' for all."),
    seed: Path | None = SeedOption,
    timeout: float | None = TimeoutOption,
    json_out: bool = JsonOption,
) -> None:
    """Run several functions (default: all) against one repository."""
    settings = load_cli_settings(_config(ctx))
    try:
        report = asyncio.run(_scan(settings, seed, repository, functions or [ALL_FUNCTIONS], timeout))
    except EngineError as exc:
        console.print(f"[bold red]{exc.kind}[/bold red]: {exc.message}")
        raise typer.Exit(code=1) from None
    output_report(report, as_json=json_out)
    if not report.succeeded:
        raise typer.Exit(code=1)


def functions_command(
    ctx: typer.Context,
    seed: Path | None = SeedOption,
) -> None:
    """List the functions known to the registry."""
    settings = load_cli_settings(_config(ctx))
    try:
        functions = asyncio.run(_list_functions(settings, seed))
    except EngineError as exc:
        console.print(f"[bold red]{exc.kind}[/bold red]: {exc.message}")
        raise typer.Exit(code=1) from None
    if not functions:
        console.print("[dim]No functions.[/dim]")
        return
    print_table(
        [
            {
                "id": f.id,
                "name": f.name,
                "image": f.environment.base_image,
                "network": f.capabilities.network,
                "filesystem": f.capabilities.filesystem,
            }
            for f in functions
        ],
        title="Functions",
    )
