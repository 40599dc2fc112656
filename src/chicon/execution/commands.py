"""Async helpers for driving external CLIs (``git``, ``docker``/``nerdctl``).

The engine talks to git and the container runtime only through their
command-line interfaces, the same way on every host. These helpers wrap
``asyncio.create_subprocess_exec`` so a cancelled or timed-out call never
leaves the child process behind. Each child leads its own session, and
reaping kills the whole process group, so helpers the CLI forked (for
example ``git-remote-https``) go with it.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from chicon.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one CLI invocation."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


async def _reap(process: asyncio.subprocess.Process) -> None:
    # The group can outlive its leader while helpers still hold the pipes.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    await process.wait()


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
) -> CommandResult:
    """Run *argv* to completion and capture its output.

    Raises:
        FileNotFoundError: If the executable does not exist.
        TimeoutError: If *timeout* elapses; the child and its process
            group are killed first.
    """
    logger.debug("command.exec", argv=list(argv))
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=str(cwd) if cwd is not None else None,
        start_new_session=True,
    )
    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate()
    except BaseException:
        await asyncio.shield(_reap(process))
        raise

    return CommandResult(
        argv=tuple(argv),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
