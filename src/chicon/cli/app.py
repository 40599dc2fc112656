"""
Root Typer application for the chicon runner CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from chicon import __version__

app = Typer(
    name="chicon",
    help="chicon — run analysis functions against repositories in sandboxed containers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("chicon-runner")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"chicon-runner {v}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="TOML configuration file (default: $CHICON_CONFIG, then ./chicon.toml).",
    ),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """chicon runner — execute functions, scan repositories, check the host."""
    ctx.obj = {"config": config}


# ── Command registration ─────────────────────────────────────────────────

from chicon.cli.check import check  # noqa: E402
from chicon.cli.execute import exec_command, functions_command, scan_command  # noqa: E402

app.command("check")(check)
app.command("exec")(exec_command)
app.command("scan")(scan_command)
app.command("functions")(functions_command)
