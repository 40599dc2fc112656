"""Container sandbox — one isolated container per execution.

Drives a docker-compatible CLI (``docker``, ``nerdctl``, ``podman``)
through subprocesses, the same way on every host, with no SDK dependency.

Lifecycle per execution::

    Created ──► Started ──┬──► Running ─────┬──► Stopped ──► Removed
                          └──► StartFailed ─┘

Architecture:

    .. code-block:: text

        SandboxSpec ──► build_run_args() ──► <cli> run ... (attached)
                                                 │
                     stdout/stderr ◄─────────────┤  bounded capture
                     exit code     ◄─────────────┤
                     timeout       ──► <cli> kill ──► client reaped
                                                 │
        teardown() ──► <cli> rm --force <name>   (always, idempotent)

    Every container is started with ``--init`` (PID 1 reaps the process
    tree), ``--cap-drop ALL``, the configured ``--security-opt`` values and
    the network/filesystem restrictions of its ``SandboxPolicy``. The
    repository and the script directory are bind-mounted read-only; the
    result location is the only writable host path.

Exit-code conventions of the docker CLI used for start failures:
    - ``125``: the runtime could not create/start the container
    - ``126``/``127`` with an OCI runtime error: the executor is missing
      or not executable in the image

Any other exit status belongs to the script and is reported as a
``ProcessOutcome``; the scheduler turns non-zero statuses into
``ProcessCrashed``.

Tags:
    chicon, execution, sandbox, container, docker, nerdctl, subprocess

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from chicon.core.errors import ExecutorNotFound, ImagePullFailed, SandboxStartFailed
from chicon.core.logging import get_logger
from chicon.execution.commands import CommandResult, run_command
from chicon.execution.models import utcnow
from chicon.execution.policy import SandboxPolicy
from chicon.execution.workspace import RunArea

logger = get_logger(__name__)

START_FAILED_EXIT = 125
EXEC_FAILED_EXITS = (126, 127)

_EXECUTOR_MARKERS = (
    "oci runtime",
    "executable file not found",
    "exec format error",
    "starting container process",
    "failed to create shim task",
)


# ---------------------------------------------------------------------------
# Configuration and inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SandboxConfig:
    """Container runtime settings shared by every sandbox."""

    cli: str = "docker"
    namespace: str | None = None
    security_opts: tuple[str, ...] = ("no-new-privileges",)
    label_prefix: str = "chicon"
    repository_mount: str = "/workspace"
    script_mount: str = "/tmp-bin"
    result_mount: str = "/result"
    scratch_mount: str = "/tmp"
    kill_grace_seconds: float = 5.0
    output_limit_bytes: int = 1_048_576
    command_timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Any) -> SandboxConfig:
        return cls(
            cli=settings.container_cli,
            namespace=settings.container_namespace,
            security_opts=tuple(settings.container_security_opts),
            label_prefix=settings.container_label_prefix,
            repository_mount=settings.repository_mount,
            script_mount=settings.script_mount,
            result_mount=settings.result_mount,
            scratch_mount=settings.scratch_mount,
            kill_grace_seconds=settings.kill_grace_seconds,
            output_limit_bytes=settings.output_limit_bytes,
        )

    @property
    def base_argv(self) -> list[str]:
        argv = [self.cli]
        if self.namespace:
            argv.append(f"--namespace={self.namespace}")
        return argv


@dataclass(frozen=True)
class SandboxSpec:
    """Everything needed to run one function inside one container."""

    name: str
    request_id: str
    function_id: str
    image: str
    executor: str
    script_name: str
    policy: SandboxPolicy
    checkout: Path
    area: RunArea
    timeout: float


def build_run_args(config: SandboxConfig, spec: SandboxSpec) -> list[str]:
    """Build the full ``<cli> run`` argv for *spec*. Pure."""
    policy = spec.policy
    args = [
        *config.base_argv,
        "run",
        "--name", spec.name,
        "--init",
        "--cap-drop", "ALL",
    ]
    for opt in config.security_opts:
        args += ["--security-opt", opt]
    args += ["--network", policy.network.value]
    if policy.read_only_rootfs:
        args.append("--read-only")
    if policy.scratch:
        args += ["--tmpfs", config.scratch_mount]
    args += [
        "--label", f"{config.label_prefix}.request_id={spec.request_id}",
        "--label", f"{config.label_prefix}.function_id={spec.function_id}",
        "--label", f"{config.label_prefix}.profile={policy.profile.value}",
        "--workdir", config.repository_mount,
        "--volume", f"{spec.checkout}:{config.repository_mount}:ro",
        "--volume", f"{spec.area.bin_dir}:{config.script_mount}:ro",
    ]
    if policy.result_dir_writable:
        args += ["--volume", f"{spec.area.result_dir}:{config.result_mount}:rw"]
    else:
        target = f"{config.result_mount}/{spec.area.result_file.name}"
        args += ["--volume", f"{spec.area.result_file}:{target}:rw"]
    args += [
        "--pull", "never",
        spec.image,
        spec.executor,
        f"{config.script_mount}/{spec.script_name}",
    ]
    return args


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------


class BoundedCapture:
    """Keeps at most ``limit`` bytes of a stream and records overflow.

    The stream keeps being drained past the limit so the child never
    blocks on a full pipe.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self._buffer = bytearray()

    @property
    def truncated(self) -> bool:
        return self.total > self.limit

    def feed(self, chunk: bytes) -> None:
        self.total += len(chunk)
        room = self.limit - len(self._buffer)
        if room > 0:
            self._buffer += chunk[:room]

    def text(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")


async def _pump(stream: asyncio.StreamReader | None, capture: BoundedCapture) -> None:
    if stream is None:
        return
    while chunk := await stream.read(65536):
        capture.feed(chunk)


# ---------------------------------------------------------------------------
# Results and state
# ---------------------------------------------------------------------------


@dataclass
class ProcessOutcome:
    """What the script did inside the sandbox."""

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def crashed(self) -> bool:
        return not self.timed_out and self.exit_code != 0


class SandboxState(str, Enum):
    CREATED = "created"
    STARTED = "started"
    RUNNING = "running"
    START_FAILED = "start_failed"
    STOPPED = "stopped"
    REMOVED = "removed"


SANDBOX_TRANSITIONS: dict[SandboxState, frozenset[SandboxState]] = {
    SandboxState.CREATED: frozenset({SandboxState.STARTED, SandboxState.STOPPED}),
    SandboxState.STARTED: frozenset({SandboxState.RUNNING, SandboxState.START_FAILED, SandboxState.STOPPED}),
    SandboxState.RUNNING: frozenset({SandboxState.STOPPED}),
    SandboxState.START_FAILED: frozenset({SandboxState.STOPPED}),
    SandboxState.STOPPED: frozenset({SandboxState.REMOVED}),
    SandboxState.REMOVED: frozenset(),
}


def is_executor_failure(exit_code: int | None, stderr: str) -> bool:
    if exit_code not in (START_FAILED_EXIT, *EXEC_FAILED_EXITS):
        return False
    lowered = stderr.lower()
    return any(marker in lowered for marker in _EXECUTOR_MARKERS) and (
        "no such file" in lowered or "not found" in lowered or "permission denied" in lowered
        or "exec format error" in lowered
    )


# ---------------------------------------------------------------------------
# Runtime: CLI operations not tied to one execution
# ---------------------------------------------------------------------------


class ContainerRuntime:
    """Thin async wrapper over the container CLI."""

    def __init__(self, config: SandboxConfig | None = None) -> None:
        self.config = config or SandboxConfig()

    async def _cli(self, *args: str, timeout: float | None = None) -> CommandResult:
        return await run_command(
            [*self.config.base_argv, *args],
            timeout=timeout or self.config.command_timeout_seconds,
        )

    async def ensure_image(self, image: str) -> bool:
        """Make *image* available locally. Returns True when it was pulled.

        Raises:
            ImagePullFailed: If the pull fails or the CLI is unusable.
        """
        try:
            inspect = await self._cli("image", "inspect", image)
            if inspect.ok:
                return False
            logger.info("image.pulling", image=image)
            pull = await self._cli("pull", image, timeout=max(self.config.command_timeout_seconds, 600.0))
        except (OSError, TimeoutError) as exc:
            raise ImagePullFailed(f"Cannot pull {image}: {exc}", context={"image": image}, cause=exc) from exc
        if not pull.ok:
            lines = pull.stderr.strip().splitlines()
            raise ImagePullFailed(
                lines[-1] if lines else f"pull exited with {pull.returncode}",
                context={"image": image},
            )
        logger.info("image.pulled", image=image)
        return True

    async def kill(self, name: str) -> bool:
        try:
            result = await self._cli("kill", name, timeout=self.config.kill_grace_seconds or None)
        except (OSError, TimeoutError) as exc:
            logger.warning("sandbox.kill_failed", container=name, error=str(exc))
            return False
        return result.ok

    async def remove(self, name: str) -> bool:
        try:
            result = await self._cli("rm", "--force", name)
        except (OSError, TimeoutError) as exc:
            logger.warning("sandbox.remove_failed", container=name, error=str(exc))
            return False
        if not result.ok and "no such container" not in result.stderr.lower():
            logger.warning("sandbox.remove_failed", container=name, error=result.stderr.strip())
            return False
        return True

    async def ping(self) -> CommandResult:
        """``<cli> ps`` — used by the health check."""
        return await self._cli("ps")

    def sandbox(self, spec: SandboxSpec) -> Sandbox:
        return Sandbox(self, spec)


# ---------------------------------------------------------------------------
# Sandbox: one container, one execution
# ---------------------------------------------------------------------------


@dataclass
class Sandbox:
    """Lifecycle of a single container.

    ``run()`` is called at most once; ``teardown()`` always, and as many
    times as callers like.
    """

    runtime: ContainerRuntime
    spec: SandboxSpec
    state: SandboxState = SandboxState.CREATED
    history: list[SandboxState] = field(default_factory=lambda: [SandboxState.CREATED])

    @property
    def name(self) -> str:
        return self.spec.name

    def _transition(self, target: SandboxState) -> None:
        if target not in SANDBOX_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid sandbox transition: {self.state.value} → {target.value}")
        self.state = target
        self.history.append(target)
        logger.debug("sandbox.state", container=self.name, state=target.value)

    async def run(self) -> ProcessOutcome:
        """Run the executor against the script and wait for it.

        Raises:
            SandboxStartFailed: The container could not be created or started.
            ExecutorNotFound: The executor is missing from the image.
        """
        config = self.runtime.config
        argv = build_run_args(config, self.spec)
        stdout = BoundedCapture(config.output_limit_bytes)
        stderr = BoundedCapture(config.output_limit_bytes)

        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SandboxStartFailed(
                f"Cannot launch container CLI {config.cli!r}: {exc}",
                context={"container": self.name},
                cause=exc,
            ) from exc
        self._transition(SandboxState.STARTED)
        logger.info(
            "sandbox.started",
            container=self.name,
            image=self.spec.image,
            profile=self.spec.policy.profile.value,
            timeout=self.spec.timeout,
        )

        pumps = [
            asyncio.create_task(_pump(process.stdout, stdout)),
            asyncio.create_task(_pump(process.stderr, stderr)),
        ]
        timed_out = False
        try:
            async with asyncio.timeout(self.spec.timeout):
                await asyncio.gather(*pumps)
                await process.wait()
        except TimeoutError:
            timed_out = True
            logger.warning("sandbox.timed_out", container=self.name, timeout=self.spec.timeout)
            await self._stop_process(process)
        except asyncio.CancelledError:
            logger.info("sandbox.cancelled", container=self.name)
            await asyncio.shield(self._stop_process(process))
            raise
        finally:
            await self._drain(pumps)
            if self.state is SandboxState.STARTED and (timed_out or process.returncode is not None):
                if not timed_out and is_executor_failure(process.returncode, stderr.text()):
                    self._transition(SandboxState.START_FAILED)
                elif not timed_out and process.returncode == START_FAILED_EXIT:
                    self._transition(SandboxState.START_FAILED)
                else:
                    self._transition(SandboxState.RUNNING)
            if self.state is not SandboxState.STOPPED:
                self._transition(SandboxState.STOPPED)

        outcome = ProcessOutcome(
            exit_code=process.returncode,
            stdout=stdout.text(),
            stderr=stderr.text(),
            truncated=stdout.truncated or stderr.truncated,
            timed_out=timed_out,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

        if SandboxState.START_FAILED in self.history:
            context = {"container": self.name, "image": self.spec.image, "exit_code": outcome.exit_code}
            detail = outcome.stderr.strip()[-2000:] or f"exit status {outcome.exit_code}"
            if is_executor_failure(outcome.exit_code, outcome.stderr):
                raise ExecutorNotFound(
                    f"Executor {self.spec.executor!r} not runnable in {self.spec.image}: {detail}",
                    context={**context, "executor": self.spec.executor},
                )
            raise SandboxStartFailed(detail, context=context)

        logger.info(
            "sandbox.exited",
            container=self.name,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            stdout_bytes=stdout.total,
            stderr_bytes=stderr.total,
            truncated=outcome.truncated,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    async def teardown(self) -> None:
        """Remove the container. Safe to call in any state, any number of times."""
        if self.state is SandboxState.REMOVED:
            return
        await asyncio.shield(self.runtime.remove(self.name))
        if self.state is not SandboxState.STOPPED:
            self._transition(SandboxState.STOPPED)
        self._transition(SandboxState.REMOVED)
        logger.debug("sandbox.removed", container=self.name, at=utcnow().isoformat())

    async def _stop_process(self, process: asyncio.subprocess.Process) -> None:
        """Kill the container, then make sure the attached client is gone."""
        grace = self.runtime.config.kill_grace_seconds
        await self.runtime.kill(self.name)
        try:
            async with asyncio.timeout(grace):
                await process.wait()
            return
        except TimeoutError:
            pass
        try:
            process.terminate()
            async with asyncio.timeout(grace):
                await process.wait()
            return
        except (ProcessLookupError, TimeoutError):
            pass
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _drain(self, pumps: list[asyncio.Task[None]]) -> None:
        grace = self.runtime.config.kill_grace_seconds
        done, pending = await asyncio.wait(pumps, timeout=grace or None)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("sandbox.capture_failed", container=self.name, error=str(task.exception()))
