"""
Shared pytest fixtures for chicon-runner tests.

This module provides:
- A fake docker-compatible CLI (tests/fixtures/fake_container_cli.py) behind
  a per-test shell wrapper, plus helpers to read what it recorded
- A static provisioner so scheduler tests do not need git
- Function / registry / scheduler factories
- A local git repository with a ``develop`` branch and a subdirectory
"""

from __future__ import annotations

import itertools
import json
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from chicon.execution.models import CommitInfo
from chicon.execution.provisioner import CachedCheckout, CheckoutLease
from chicon.execution.retry import ExponentialBackoff
from chicon.execution.sandbox import ContainerRuntime, SandboxConfig
from chicon.execution.scheduler import ExecutionScheduler
from chicon.execution.workspace import Workspace
from chicon.models import Capabilities, Environment, Function, Repository
from chicon.registry import InMemoryRegistry

FIXTURES = Path(__file__).parent / "fixtures"
SEED_FILE = Path(__file__).parent.parent / "seed.json"


# =============================================================================
# Fake container CLI
# =============================================================================


@dataclass
class FakeCli:
    """Handle on the fake container CLI of one test."""

    path: Path
    state_dir: Path

    def _lines(self, name: str) -> list[str]:
        path = self.state_dir / name
        return path.read_text(encoding="utf-8").splitlines() if path.exists() else []

    def runs(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self._lines("runs.jsonl")]

    def removed(self) -> list[str]:
        return self._lines("removed.txt")

    def killed(self) -> list[str]:
        return self._lines("killed.txt")

    def pull_attempts(self) -> list[str]:
        return self._lines("pull-attempts.txt")


@pytest.fixture
def fake_cli(tmp_path: Path) -> FakeCli:
    state_dir = tmp_path / "fake-cli-state"
    state_dir.mkdir()
    wrapper = tmp_path / "fake-docker"
    wrapper.write_text(
        "#!/bin/sh\n"
        f"export FAKE_STATE_DIR='{state_dir}'\n"
        f"exec '{sys.executable}' '{FIXTURES / 'fake_container_cli.py'}' \"$@\"\n",
        encoding="utf-8",
    )
    wrapper.chmod(0o755)
    return FakeCli(path=wrapper, state_dir=state_dir)


# =============================================================================
# Provisioning
# =============================================================================


class StaticProvisioner:
    """Serves one prepared directory as every checkout."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.calls: list[str] = []
        self.released = 0
        self.failures: list[Exception] = []
        self.commit = CommitInfo(
            sha="3f9c2a1be07d4c5e8a6b1d2c3e4f5a6b7c8d9e0f",
            committed_at="2024-05-01T12:00:00+00:00",
        )

    async def acquire(self, repository: Repository) -> CheckoutLease:
        self.calls.append(repository.id)
        if self.failures:
            raise self.failures.pop(0)
        entry = CachedCheckout(
            key=(repository.url, repository.branch),
            root=self.root,
            created_at=0.0,
            leases=1,
            commit=self.commit,
        )
        return CheckoutLease(entry=entry, path=self.root)

    def release(self, lease: CheckoutLease) -> None:
        self.released += 1


@pytest.fixture
def checkout_dir(tmp_path: Path) -> Path:
    root = tmp_path / "checkout"
    (root / "src").mkdir(parents=True)
    (root / "README.md").write_text("# sample\n", encoding="utf-8")
    (root / "src" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")
    return root


@pytest.fixture
def static_provisioner(checkout_dir: Path) -> StaticProvisioner:
    return StaticProvisioner(checkout_dir)


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Local repository: ``main`` with ``packages/api``, plus a ``develop`` branch."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "origin"
    repo.mkdir()
    _git("init", "-q", cwd=repo)
    _git("checkout", "-q", "-b", "main", cwd=repo)
    _git("config", "user.email", "tests@example.com", cwd=repo)
    _git("config", "user.name", "Tests", cwd=repo)
    _git("config", "commit.gpgsign", "false", cwd=repo)
    (repo / "README.md").write_text("# sample\n", encoding="utf-8")
    (repo / "packages" / "api").mkdir(parents=True)
    (repo / "packages" / "api" / "package.json").write_text("{}\n", encoding="utf-8")
    _git("add", ".", cwd=repo)
    _git("commit", "-q", "-m", "initial", cwd=repo)
    _git("checkout", "-q", "-b", "develop", cwd=repo)
    (repo / "DEVELOP.md").write_text("dev\n", encoding="utf-8")
    _git("add", ".", cwd=repo)
    _git("commit", "-q", "-m", "develop", cwd=repo)
    _git("checkout", "-q", "main", cwd=repo)
    return repo


# =============================================================================
# Definitions and scheduler
# =============================================================================


@pytest.fixture
def repository() -> Repository:
    return Repository(id="repo-1", name="sample", url="https://example.com/sample.git", tags=frozenset({"nodejs"}))


@pytest.fixture
def registry(repository: Repository) -> InMemoryRegistry:
    return InMemoryRegistry(repositories=[repository])


@pytest.fixture
def make_function(registry: InMemoryRegistry) -> Callable[..., Function]:
    """Build a function from fake-CLI directives and register it."""
    ids = itertools.count(1)

    def factory(
        content: str,
        *,
        image: str = "fake/alpine",
        executor: str = "/bin/sh",
        network: bool = False,
        filesystem: bool = False,
        function_id: str | None = None,
    ) -> Function:
        function = Function(
            id=function_id or f"fn-{next(ids)}",
            name="test function",
            environment=Environment(name="shell", base_image=image, file_extension="sh", executor=executor),
            capabilities=Capabilities(network=network, filesystem=filesystem),
            content=content,
        )
        registry.add_function(function)
        return function

    return factory


@pytest.fixture
def make_scheduler(
    tmp_path: Path,
    fake_cli: FakeCli,
    registry: InMemoryRegistry,
    static_provisioner: StaticProvisioner,
) -> Callable[..., ExecutionScheduler]:
    def factory(
        *,
        output_limit_bytes: int = 1_048_576,
        kill_grace_seconds: float = 2.0,
        **kwargs: Any,
    ) -> ExecutionScheduler:
        config = SandboxConfig(
            cli=str(fake_cli.path),
            kill_grace_seconds=kill_grace_seconds,
            output_limit_bytes=output_limit_bytes,
        )
        kwargs.setdefault("retry_strategy", lambda: ExponentialBackoff(max_attempts=3, base_delay=0.0, jitter=False))
        return ExecutionScheduler(
            kwargs.pop("registry", registry),
            kwargs.pop("provisioner", static_provisioner),
            ContainerRuntime(config),
            Workspace(tmp_path / "workspace"),
            **kwargs,
        )

    return factory
