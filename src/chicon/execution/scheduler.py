"""Execution scheduler — runs requests with bounded parallelism.

Each submitted ``ExecutionRequest`` becomes one asyncio task that walks the
execution state machine and always ends with exactly one terminal
``ExecutionResult``:

    .. code-block:: text

        submit(request)
            │
            ▼
        PENDING ── acquire concurrency slot (FIFO, submission order)
            │  resolve function + repository (registry, retried)
            │           └─ definition error ───────────────► FAILED
            ▼
        PROVISIONING ── checkout (retried) · run area · image (retried)
            ▼
        RUNNING ── sandbox.run()  ── start failure ────────► FAILED
            ▼
        COLLECTING ── read result artifact
            ├─ exit 0 ────────────────────────────────────► COMPLETED
            ├─ exit ≠ 0 ──────────────── ProcessCrashed ──► FAILED
            └─ timeout ──────────────── ProcessTimedOut ──► TIMED_OUT

        cancel(request_id) at any stage ──────────────────► CANCELLED
        teardown (container, run area, checkout lease) runs on every path

The concurrency slot is taken before the registry lookup and held through
teardown, so requests are served in the order they were submitted and the
number of live sandboxes never exceeds ``max_concurrency``. Errors stay
attached to the execution they belong to; nothing raised inside one
execution reaches another or the caller's ``await``.

Example:
    >>> scheduler = ExecutionScheduler.from_settings(settings, registry)
    >>> result = await scheduler.run(ExecutionRequest(function_id=fid, repository_id=rid))
    >>> result.state, result.result_map
    (<ExecutionState.COMPLETED: 'completed'>, {'repository_size': '12M'})
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from chicon.core.errors import (
    DefinitionError,
    EngineError,
    InternalError,
    ProcessCrashed,
    ProcessTimedOut,
    RegistryUnavailable,
)
from chicon.core.logging import bind_context, get_logger, unbind_context
from chicon.execution.collector import CollectedResult, ResultCollector
from chicon.execution.models import (
    BatchReport,
    Execution,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    utcnow,
)
from chicon.execution.policy import policy_for
from chicon.execution.provisioner import RepositoryProvisioner
from chicon.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy
from chicon.execution.sandbox import ContainerRuntime, ProcessOutcome, SandboxConfig, SandboxSpec
from chicon.execution.workspace import Workspace, safe_name
from chicon.models import Function, Repository
from chicon.registry.client import RegistryClient

logger = get_logger(__name__)

T = TypeVar("T")

ALL_FUNCTIONS = "*"


class ExecutionScheduler:
    """Accepts execution requests and runs them through every stage.

    Args:
        registry: Source of function and repository definitions.
        provisioner: Repository checkout provider.
        runtime: Container runtime used to create sandboxes.
        workspace: Host workspace for per-execution run areas.
        collector: Result artifact reader.
        max_concurrency: Upper bound on simultaneously active sandboxes.
        default_timeout: Wall-clock limit for requests without their own.
        retry_strategy: Factory for the backoff applied to transient
            failures (registry, checkout, image pull). Called once per
            retried operation.
        result_file: File name of the result artifact.
    """

    def __init__(
        self,
        registry: RegistryClient,
        provisioner: RepositoryProvisioner,
        runtime: ContainerRuntime,
        workspace: Workspace,
        *,
        collector: ResultCollector | None = None,
        max_concurrency: int = 4,
        default_timeout: float = 300.0,
        retry_strategy: Callable[[], RetryStrategy] | None = None,
        result_file: str = "data.toml",
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.registry = registry
        self.provisioner = provisioner
        self.runtime = runtime
        self.workspace = workspace
        self.collector = collector or ResultCollector()
        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.result_file = result_file
        self._retry_strategy = retry_strategy or ExponentialBackoff
        self._slots = asyncio.Semaphore(max_concurrency)
        self._executions: dict[str, Execution] = {}
        self._tasks: dict[str, asyncio.Task[ExecutionResult]] = {}
        self._started: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._active = 0
        self.peak_active = 0

    @classmethod
    def from_settings(cls, settings: Any, registry: RegistryClient) -> ExecutionScheduler:
        """Wire a scheduler and its collaborators from ``RunnerSettings``."""
        workspace = Workspace(settings.workspace_path)
        provisioner = RepositoryProvisioner(
            workspace,
            git_cli=settings.git_cli,
            ttl_seconds=settings.checkout_ttl_seconds,
            clone_depth=settings.clone_depth,
            clone_timeout=settings.clone_timeout_seconds,
            cache_size_bytes=settings.cache_size_bytes,
        )

        def backoff() -> RetryStrategy:
            return ExponentialBackoff(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            )

        return cls(
            registry,
            provisioner,
            ContainerRuntime(SandboxConfig.from_settings(settings)),
            workspace,
            collector=ResultCollector(limit_bytes=settings.result_limit_bytes),
            max_concurrency=settings.max_concurrency,
            default_timeout=settings.default_timeout_seconds,
            retry_strategy=backoff,
            result_file=settings.result_file,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active(self) -> int:
        """Executions currently holding a concurrency slot."""
        return self._active

    def get(self, request_id: str) -> Execution | None:
        return self._executions.get(request_id)

    def submit(self, request: ExecutionRequest) -> asyncio.Task[ExecutionResult]:
        """Queue *request* and return the task resolving to its result.

        Raises:
            ValueError: If an execution with the same ``request_id`` is
                still in progress.
        """
        existing = self._tasks.get(request.request_id)
        if existing is not None and not existing.done():
            raise ValueError(f"Execution {request.request_id} is already in progress")

        self.workspace.ensure()
        execution = Execution(request=request)
        self._started.discard(request.request_id)
        self._cancel_requested.discard(request.request_id)
        self._executions[request.request_id] = execution
        task = asyncio.create_task(self._execute(execution), name=f"execution-{request.request_id}")
        self._tasks[request.request_id] = task
        logger.info(
            "execution.submitted",
            request_id=request.request_id,
            function_id=request.function_id,
            repository_id=request.repository_id,
        )
        return task

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Submit *request* and wait for its terminal result."""
        return await self.submit(request)

    async def run_batch(self, requests: Iterable[ExecutionRequest]) -> BatchReport:
        """Run several requests concurrently; results keep submission order."""
        submitted = [(request, self.submit(request)) for request in requests]
        outcomes = await asyncio.gather(*(task for _, task in submitted), return_exceptions=True)
        return BatchReport(results=[
            self._settle(request, outcome) for (request, _), outcome in zip(submitted, outcomes)
        ])

    async def scan(
        self,
        repository_id: str,
        function_ids: Sequence[str] | str = ALL_FUNCTIONS,
        *,
        timeout: float | None = None,
    ) -> BatchReport:
        """Run a set of functions against one repository.

        ``"*"`` (or an empty selection) means every function in the registry.
        """
        if isinstance(function_ids, str):
            function_ids = [function_ids]
        if not function_ids or ALL_FUNCTIONS in function_ids:
            functions = await RetryContext(self._retry_strategy()).run_async(self.registry.list_functions)
            function_ids = [function.id for function in functions]
        logger.info("scan.started", repository_id=repository_id, functions=len(function_ids))
        report = await self.run_batch(
            ExecutionRequest(function_id=fid, repository_id=repository_id, timeout=timeout)
            for fid in function_ids
        )
        logger.info("scan.finished", repository_id=repository_id, **report.counts)
        return report

    def cancel(self, request_id: str) -> bool:
        """Cancel a pending or running execution.

        Returns False when the execution is unknown or already finished.
        """
        task = self._tasks.get(request_id)
        if task is None or task.done():
            return False
        logger.info("execution.cancel_requested", request_id=request_id)
        if request_id not in self._started:
            # Cancelling a task before its first step would skip its handlers.
            self._cancel_requested.add(request_id)
            return True
        return task.cancel()

    async def shutdown(self) -> None:
        """Cancel every unfinished execution and wait for teardown."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for request_id in list(self._tasks):
            self.cancel(request_id)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> ExecutionScheduler:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Execution pipeline
    # ------------------------------------------------------------------

    async def _execute(self, execution: Execution) -> ExecutionResult:
        request = execution.request
        self._started.add(request.request_id)
        bind_context(request_id=request.request_id)
        started_at = utcnow()
        try:
            if request.request_id in self._cancel_requested:
                raise asyncio.CancelledError
            async with self._slots:
                self._active += 1
                self.peak_active = max(self.peak_active, self._active)
                try:
                    function, repository = await self._resolve(execution)
                    return await self._run_stages(execution, function, repository, started_at)
                finally:
                    self._active -= 1
        except asyncio.CancelledError:
            # Swallowed here so the handle still resolves to a result.
            return self._finish(execution, ExecutionState.CANCELLED, started_at=started_at)
        except EngineError as exc:
            return self._finish(execution, ExecutionState.FAILED, started_at=started_at, error=exc)
        except Exception as exc:
            logger.exception("execution.internal_error", error=str(exc))
            error = InternalError(f"{type(exc).__name__}: {exc}", cause=exc)
            return self._finish(execution, ExecutionState.FAILED, started_at=started_at, error=error)
        finally:
            unbind_context("request_id")

    async def _resolve(self, execution: Execution) -> tuple[Function, Repository]:
        request = execution.request
        function = await self._with_retry(execution, "resolve_function", self.registry.get_function, request.function_id)
        repository = await self._with_retry(
            execution, "resolve_repository", self.registry.get_repository, request.repository_id
        )
        return function, repository

    async def _run_stages(
        self,
        execution: Execution,
        function: Function,
        repository: Repository,
        started_at: datetime,
    ) -> ExecutionResult:
        request = execution.request
        timeout = request.timeout or self.default_timeout
        policy = policy_for(function.capabilities)

        execution.transition_to(ExecutionState.PROVISIONING)
        lease = await self._with_retry(execution, "provision", self.provisioner.acquire, repository)
        execution.commit = lease.commit
        try:
            area = self.workspace.create_run_area(request.request_id, result_file=self.result_file)
            try:
                area.write_script(function.environment.script_name, function.content)
                await self._with_retry(execution, "image", self.runtime.ensure_image, function.environment.base_image)

                sandbox = self.runtime.sandbox(SandboxSpec(
                    name=f"chicon-{safe_name(request.request_id)}",
                    request_id=request.request_id,
                    function_id=function.id,
                    image=function.environment.base_image,
                    executor=function.environment.executor,
                    script_name=function.environment.script_name,
                    policy=policy,
                    checkout=lease.path,
                    area=area,
                    timeout=timeout,
                ))
                try:
                    execution.transition_to(ExecutionState.RUNNING)
                    outcome = await sandbox.run()
                    execution.transition_to(ExecutionState.COLLECTING)
                    collected = self.collector.collect(area.result_file)
                finally:
                    await sandbox.teardown()
            finally:
                self.workspace.release_run_area(area)
        finally:
            self.provisioner.release(lease)

        return self._conclude(execution, outcome, collected, started_at, timeout)

    def _conclude(
        self,
        execution: Execution,
        outcome: ProcessOutcome,
        collected: CollectedResult,
        started_at: datetime,
        timeout: float,
    ) -> ExecutionResult:
        state = ExecutionState.COMPLETED
        error: EngineError | None = None
        if outcome.timed_out:
            state = ExecutionState.TIMED_OUT
            error = ProcessTimedOut(f"Execution exceeded {timeout:g}s", context={"timeout": timeout})
        elif outcome.crashed:
            state = ExecutionState.FAILED
            error = ProcessCrashed(
                f"Process exited with status {outcome.exit_code}",
                context={"exit_code": outcome.exit_code},
            )
        return self._finish(
            execution,
            state,
            started_at=started_at,
            error=error,
            outcome=outcome,
            collected=collected,
        )

    def _finish(
        self,
        execution: Execution,
        state: ExecutionState,
        *,
        started_at: datetime,
        error: EngineError | None = None,
        outcome: ProcessOutcome | None = None,
        collected: CollectedResult | None = None,
    ) -> ExecutionResult:
        request = execution.request
        execution.transition_to(state)
        result = ExecutionResult(
            request_id=request.request_id,
            function_id=request.function_id,
            repository_id=request.repository_id,
            state=state,
            result_map=dict(collected.values) if collected else {},
            exit_code=outcome.exit_code if outcome else None,
            stdout=outcome.stdout if outcome else "",
            stderr=outcome.stderr if outcome else "",
            truncated=bool(outcome and outcome.truncated) or bool(collected and collected.truncated),
            commit=execution.commit,
            error=error,
            started_at=started_at,
            finished_at=utcnow(),
        )
        execution.result = result

        log = logger.warning if state is not ExecutionState.COMPLETED else logger.info
        log(
            "execution.finished",
            state=state.value,
            duration_ms=result.duration_ms,
            exit_code=result.exit_code,
            results=len(result.result_map),
            error=error.kind if error else None,
            definition_error=isinstance(error, DefinitionError),
        )
        return result

    def _settle(self, request: ExecutionRequest, outcome: ExecutionResult | BaseException) -> ExecutionResult:
        """Turn the outcome of a batch member's task into its terminal result."""
        if isinstance(outcome, ExecutionResult):
            return outcome
        execution = self._executions[request.request_id]
        if execution.result is not None:
            return execution.result
        if isinstance(outcome, asyncio.CancelledError):
            return self._finish(execution, ExecutionState.CANCELLED, started_at=execution.created_at)
        error = InternalError(f"{type(outcome).__name__}: {outcome}", cause=outcome)
        return self._finish(execution, ExecutionState.FAILED, started_at=execution.created_at, error=error)

    async def _with_retry(
        self,
        execution: Execution,
        stage: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "execution.retrying",
                stage=stage,
                attempt=attempt,
                delay=round(delay, 2),
                error=getattr(error, "kind", type(error).__name__),
                registry=isinstance(error, RegistryUnavailable),
            )

        ctx = RetryContext(self._retry_strategy(), on_retry=on_retry)
        try:
            return await ctx.run_async(func, *args)
        finally:
            execution.attempts[stage] = ctx.attempts
