"""Repository provisioner — materializes repository checkouts on the host.

Given a ``Repository``, produce a local directory tree reflecting ``url``
at ``branch`` (the remote's default branch when unset), narrowed to
``directory`` when set. The tree is mounted read-only into the sandbox.

Checkout cache:

    .. code-block:: text

        checkouts/<sha(url, branch)>/<generation>/
                       │
                       ├── fresh (age < ttl)      → served to new leases
                       ├── retired (refreshed)    → kept until last lease ends
                       └── expired & unleased     → removed by prune()

    Entries are keyed by ``(url, branch)`` and shared by concurrent
    executions. A per-key lock means only one clone per key is in flight;
    waiters reuse its result. Refreshing an expired entry clones a *new*
    generation directory, so executions still holding the old one keep
    reading it undisturbed. With ``ttl_seconds=0`` every lease gets its own
    clone, removed when the lease is released.

Failure mapping (from ``git clone`` stderr):
    - unknown branch                       → ``RepositoryRefNotFound``
    - authentication / repository missing  → ``RepositoryUnreachable`` (not retryable)
    - anything else (network, rate limit)  → ``RepositoryUnreachable`` (retryable)
    - clone exceeding ``clone_timeout``     → ``RepositoryUnreachable`` (retryable)
    - ``directory`` missing after checkout → ``RepositoryPathNotFound``

Example:
    >>> provisioner = RepositoryProvisioner(workspace, ttl_seconds=300)
    >>> async with provisioner.checkout(repository) as path:
    ...     ...  # mount path read-only
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
import time
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from chicon.core.errors import (
    InternalError,
    RepositoryPathNotFound,
    RepositoryRefNotFound,
    RepositoryUnreachable,
)
from chicon.core.logging import get_logger
from chicon.execution.commands import run_command
from chicon.execution.models import CommitInfo
from chicon.execution.workspace import Workspace, directory_size
from chicon.models import Repository

logger = get_logger(__name__)

CacheKey = tuple[str, str | None]

_REF_MARKERS = (
    "remote branch",
    "couldn't find remote ref",
    "not found in upstream",
)
_PERMANENT_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "permission denied",
    "repository not found",
    "does not exist",
    "does not appear to be a git repository",
)


def classify_clone_failure(url: str, branch: str | None, stderr: str) -> Exception:
    """Map ``git clone`` stderr to a provisioning error."""
    lowered = stderr.lower()
    message = stderr.strip().splitlines()[-1] if stderr.strip() else "git clone failed"
    context = {"url": url, "branch": branch}
    if branch and any(marker in lowered for marker in _REF_MARKERS):
        return RepositoryRefNotFound(f"Branch {branch!r} not found: {message}", context=context)
    if any(marker in lowered for marker in _PERMANENT_MARKERS):
        return RepositoryUnreachable(message, retryable=False, context=context)
    return RepositoryUnreachable(message, context=context)


def cache_key_dir(key: CacheKey) -> str:
    url, branch = key
    return hashlib.sha256(f"{url}\0{branch or ''}".encode()).hexdigest()[:16]


def resolve_directory(root: Path, directory: str | None) -> Path:
    """Return ``root/directory``, refusing paths that leave the checkout.

    Raises:
        RepositoryPathNotFound: If the subpath is missing or escapes *root*.
    """
    if not directory or directory.strip("/") in ("", "."):
        return root
    resolved_root = root.resolve()
    candidate = (resolved_root / directory.strip("/")).resolve()
    if not candidate.is_relative_to(resolved_root) or not candidate.is_dir():
        raise RepositoryPathNotFound(
            f"Directory {directory!r} not found in checkout",
            context={"directory": directory},
        )
    return candidate


@dataclass
class CachedCheckout:
    """One cloned generation of a ``(url, branch)`` pair."""

    key: CacheKey
    root: Path
    created_at: float
    size_bytes: int = 0
    commit: CommitInfo | None = None
    leases: int = 0
    retired: bool = False


@dataclass(frozen=True)
class CheckoutLease:
    """A checkout in use by one execution. Release it exactly once."""

    entry: CachedCheckout = field(repr=False)
    path: Path

    @property
    def commit(self) -> CommitInfo | None:
        return self.entry.commit


class RepositoryProvisioner:
    """Clones repositories through the git CLI and caches the checkouts.

    Args:
        workspace: Host workspace owning the ``checkouts`` directory.
        git_cli: git binary name or path.
        ttl_seconds: How long a checkout is served to new executions.
            ``0`` disables sharing.
        clone_depth: ``--depth`` passed to git; ``0`` clones full history.
        clone_timeout: Seconds before a clone is abandoned as unreachable.
        cache_size_bytes: Budget for unleased checkouts, enforced by
            :meth:`prune`.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        workspace: Workspace,
        *,
        git_cli: str = "git",
        ttl_seconds: float = 300.0,
        clone_depth: int = 1,
        clone_timeout: float = 600.0,
        cache_size_bytes: int = 100_000_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.workspace = workspace
        self.git_cli = git_cli
        self.ttl_seconds = ttl_seconds
        self.clone_depth = clone_depth
        self.clone_timeout = clone_timeout
        self.cache_size_bytes = cache_size_bytes
        self._clock = clock
        self._entries: dict[CacheKey, CachedCheckout] = {}
        self._retired: list[CachedCheckout] = []
        self._locks: defaultdict[CacheKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._in_flight: set[Path] = set()
        self.clones = 0

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    @property
    def caching(self) -> bool:
        return self.ttl_seconds > 0

    def is_expired(self, entry: CachedCheckout) -> bool:
        return self._clock() - entry.created_at >= self.ttl_seconds

    async def acquire(self, repository: Repository) -> CheckoutLease:
        """Lease a checkout of *repository*, cloning it if needed.

        Raises:
            RepositoryUnreachable: Network or authentication failure.
            RepositoryRefNotFound: ``branch`` does not exist.
            RepositoryPathNotFound: ``directory`` does not exist.
        """
        key: CacheKey = (repository.url, repository.branch)
        async with self._locks[key]:
            entry = self._entries.get(key) if self.caching else None
            if entry is not None and self.is_expired(entry):
                self._retire(entry)
                entry = None
            if entry is None:
                entry = await self._clone(key)
                if self.caching:
                    self._entries[key] = entry
                else:
                    entry.retired = True
            else:
                logger.debug("checkout.cached", repository=repository.id, root=str(entry.root))
            entry.leases += 1

        try:
            path = resolve_directory(entry.root, repository.directory)
        except RepositoryPathNotFound as exc:
            self.release(CheckoutLease(entry=entry, path=entry.root))
            exc.with_context(repository=repository.id)
            raise

        self.prune()
        return CheckoutLease(entry=entry, path=path)

    def release(self, lease: CheckoutLease) -> None:
        """End a lease; retired checkouts are removed with their last lease."""
        entry = lease.entry
        entry.leases = max(entry.leases - 1, 0)
        if entry.leases == 0 and entry.retired:
            if entry in self._retired:
                self._retired.remove(entry)
            self._remove(entry)

    @asynccontextmanager
    async def checkout(self, repository: Repository) -> AsyncIterator[Path]:
        """Lease a checkout for the duration of the ``async with`` block."""
        lease = await self.acquire(repository)
        try:
            yield lease.path
        finally:
            self.release(lease)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def usage_bytes(self) -> int:
        checkouts = self.workspace.checkouts_dir
        return directory_size(checkouts) if checkouts.exists() else 0

    def prune(self) -> list[Path]:
        """Remove expired unleased checkouts, then the oldest unleased ones
        while the checkout cache exceeds its size budget.

        Returns the removed checkout roots.
        """
        removed: list[Path] = []
        for key, entry in list(self._entries.items()):
            if entry.leases == 0 and self.is_expired(entry):
                del self._entries[key]
                self._remove(entry)
                removed.append(entry.root)

        usage = self.usage_bytes()
        if usage > self.cache_size_bytes:
            idle = sorted(
                (entry for entry in self._entries.values() if entry.leases == 0),
                key=lambda entry: entry.created_at,
            )
            for entry in idle:
                if usage <= self.cache_size_bytes:
                    break
                del self._entries[entry.key]
                self._remove(entry)
                removed.append(entry.root)
                usage -= entry.size_bytes
            if usage > self.cache_size_bytes:
                logger.warning(
                    "checkout.cache_over_budget",
                    usage_bytes=usage,
                    budget_bytes=self.cache_size_bytes,
                )
        return removed

    def clear(self) -> None:
        """Drop every unleased checkout and any stray directories on disk."""
        for key, entry in list(self._entries.items()):
            if entry.leases == 0:
                del self._entries[key]
                self._remove(entry)
        known = {entry.root for entry in self._entries.values()}
        known.update(entry.root for entry in self._retired)
        known.update(self._in_flight)
        checkouts = self.workspace.checkouts_dir
        if not checkouts.exists():
            return
        for key_dir in checkouts.iterdir():
            for generation in key_dir.iterdir() if key_dir.is_dir() else ():
                if generation not in known:
                    shutil.rmtree(generation, ignore_errors=True)
            if key_dir.is_dir() and not any(key_dir.iterdir()):
                key_dir.rmdir()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _retire(self, entry: CachedCheckout) -> None:
        self._entries.pop(entry.key, None)
        if entry.leases == 0:
            self._remove(entry)
        else:
            entry.retired = True
            self._retired.append(entry)

    def _remove(self, entry: CachedCheckout) -> None:
        shutil.rmtree(entry.root, ignore_errors=True)
        logger.debug("checkout.removed", root=str(entry.root))

    def _clone_args(self, url: str, branch: str | None, dest: Path) -> list[str]:
        args = [self.git_cli, "clone", "--quiet"]
        if self.clone_depth > 0:
            args += ["--depth", str(self.clone_depth)]
        if branch:
            args += ["--branch", branch, "--single-branch"]
        return [*args, "--", url, str(dest)]

    async def _clone(self, key: CacheKey) -> CachedCheckout:
        url, branch = key
        dest = self.workspace.checkouts_dir / cache_key_dir(key) / uuid.uuid4().hex[:12]
        dest.parent.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

        self._in_flight.add(dest)
        started = time.perf_counter()
        try:
            try:
                result = await run_command(self._clone_args(url, branch, dest), env=env, timeout=self.clone_timeout)
                if not result.ok:
                    raise classify_clone_failure(url, branch, result.stderr)
                commit = await self._read_head(dest)
            except FileNotFoundError as exc:
                raise InternalError(f"git CLI not found: {self.git_cli}", cause=exc) from exc
            except TimeoutError as exc:
                raise RepositoryUnreachable(
                    f"git clone did not finish within {self.clone_timeout:g}s",
                    context={"url": url, "branch": branch, "timeout": self.clone_timeout},
                    cause=exc,
                ) from exc
        except BaseException:
            shutil.rmtree(dest, ignore_errors=True)
            raise
        finally:
            self._in_flight.discard(dest)

        self.clones += 1
        entry = CachedCheckout(
            key=key,
            root=dest,
            created_at=self._clock(),
            size_bytes=directory_size(dest),
            commit=commit,
        )
        logger.info(
            "checkout.cloned",
            url=url,
            branch=branch,
            size_bytes=entry.size_bytes,
            commit=commit.sha if commit else None,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return entry

    async def _read_head(self, root: Path) -> CommitInfo | None:
        result = await run_command(
            [self.git_cli, "-C", str(root), "log", "-1", "--format=%H%n%cI"],
            timeout=self.clone_timeout,
        )
        lines = result.stdout.split()
        if not result.ok or not lines:
            logger.warning("checkout.head_unknown", root=str(root), error=result.output)
            return None
        return CommitInfo(sha=lines[0], committed_at=lines[1] if len(lines) > 1 else None)
