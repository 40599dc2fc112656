"""
CLI: ``chicon check`` — verify the host can run executions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import typer

from chicon.cli.utils import console, err_console, load_cli_settings, print_table
from chicon.core.settings import RunnerSettings
from chicon.execution.commands import run_command
from chicon.execution.sandbox import ContainerRuntime, SandboxConfig
from chicon.execution.workspace import Workspace


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


async def _check_command(name: str, argv: list[str]) -> CheckResult:
    try:
        result = await run_command(argv, timeout=15)
    except FileNotFoundError:
        return CheckResult(name, False, f"{argv[0]} not found")
    except (OSError, TimeoutError) as exc:
        return CheckResult(name, False, f"{type(exc).__name__}: {exc}")
    first_line = result.output.splitlines()[0] if result.output else ""
    return CheckResult(name, result.ok, first_line or f"exit status {result.returncode}")


async def _check_container(settings: RunnerSettings) -> CheckResult:
    runtime = ContainerRuntime(SandboxConfig.from_settings(settings))
    try:
        result = await runtime.ping()
    except FileNotFoundError:
        return CheckResult("container", False, f"{settings.container_cli} not found")
    except (OSError, TimeoutError) as exc:
        return CheckResult("container", False, f"{type(exc).__name__}: {exc}")
    detail = "runtime reachable" if result.ok else (result.stderr.strip().splitlines() or ["unreachable"])[-1]
    return CheckResult("container", result.ok, detail)


def _check_workspace(settings: RunnerSettings) -> CheckResult:
    workspace = Workspace(settings.workspace_path)
    try:
        writable = workspace.is_writable()
    except OSError as exc:
        return CheckResult("workspace", False, str(exc))
    detail = f"{workspace.base_path} ({workspace.usage_bytes()} bytes used)"
    return CheckResult("workspace", writable, detail if writable else f"{workspace.base_path} not writable")


async def run_checks(settings: RunnerSettings) -> list[CheckResult]:
    git, container = await asyncio.gather(
        _check_command("git", [settings.git_cli, "version"]),
        _check_container(settings),
    )
    return [
        CheckResult("config", True, f"{settings.container_cli}, max_concurrency={settings.max_concurrency}"),
        git,
        container,
        _check_workspace(settings),
    ]


def check(ctx: typer.Context) -> None:
    """Check configuration, git, the container runtime and the workspace."""
    settings = load_cli_settings(ctx.obj.get("config") if ctx.obj else None)
    results = asyncio.run(run_checks(settings))
    print_table(
        [
            {"check": r.name, "status": "[green]ok[/green]" if r.ok else "[red]failed[/red]", "detail": r.detail}
            for r in results
        ],
        title="Runner health",
    )
    if not all(r.ok for r in results):
        err_console.print("[bold red]Runner is not ready[/bold red]")
        raise typer.Exit(code=1)
    console.print("[green]Runner is ready[/green]")
