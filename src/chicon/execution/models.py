"""Execution domain models.

Defines the core data structures of the engine:
- ExecutionState: lifecycle states and the legal transitions between them
- ExecutionRequest: what a caller submits
- CommitInfo: the repository commit an execution ran against
- Execution: the engine-internal record tracked by the scheduler
- ExecutionResult: the terminal outcome handed back to the caller
- BatchReport: aggregated outcomes of a scan over several functions
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from chicon.core.errors import EngineError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class InvalidTransitionError(ValueError):
    """Raised when an illegal state transition is attempted.

    Terminal states have no outgoing edges; any attempt to leave one is a
    programming error, not an execution outcome.
    """

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid ExecutionState transition: {current} → {target}")


class ExecutionState(str, Enum):
    """State of one execution.

    Valid transition graph::

        PENDING      → PROVISIONING | FAILED | CANCELLED
        PROVISIONING → RUNNING | FAILED | CANCELLED
        RUNNING      → COLLECTING | FAILED | TIMED_OUT | CANCELLED
        COLLECTING   → COMPLETED | FAILED | TIMED_OUT | CANCELLED
        COMPLETED, FAILED, TIMED_OUT, CANCELLED → (terminal)

    ``PENDING → FAILED`` is the definition-error path: an unknown function
    or repository never reaches provisioning. ``COLLECTING → TIMED_OUT``
    and ``COLLECTING → FAILED`` record a process outcome decided during
    ``RUNNING`` once its partial results have been read.
    """

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    ExecutionState.COMPLETED,
    ExecutionState.FAILED,
    ExecutionState.TIMED_OUT,
    ExecutionState.CANCELLED,
})

VALID_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.PENDING: frozenset({
        ExecutionState.PROVISIONING,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    }),
    ExecutionState.PROVISIONING: frozenset({
        ExecutionState.RUNNING,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    }),
    ExecutionState.RUNNING: frozenset({
        ExecutionState.COLLECTING,
        ExecutionState.FAILED,
        ExecutionState.TIMED_OUT,
        ExecutionState.CANCELLED,
    }),
    ExecutionState.COLLECTING: frozenset({
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.TIMED_OUT,
        ExecutionState.CANCELLED,
    }),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.TIMED_OUT: frozenset(),
    ExecutionState.CANCELLED: frozenset(),
}


def validate_transition(current: ExecutionState, target: ExecutionState) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


@dataclass(frozen=True)
class ExecutionRequest:
    """One run of one function against one repository."""

    function_id: str
    repository_id: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timeout: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRequest:
        kwargs: dict[str, Any] = {
            "function_id": str(data["functionId"]),
            "repository_id": str(data["repositoryId"]),
            "timeout": data.get("timeout"),
        }
        if data.get("requestId"):
            kwargs["request_id"] = str(data["requestId"])
        return cls(**kwargs)


@dataclass(frozen=True)
class CommitInfo:
    """The commit a checkout reflects (``HEAD`` right after cloning)."""

    sha: str
    committed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"sha": self.sha, "date": self.committed_at}


@dataclass
class ExecutionResult:
    """Terminal outcome of an execution."""

    request_id: str
    function_id: str
    repository_id: str
    state: ExecutionState
    result_map: dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    error: EngineError | None = None
    commit: CommitInfo | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def has_failed(self) -> bool:
        return self.state is not ExecutionState.COMPLETED

    @property
    def logs(self) -> str:
        """stdout followed by stderr, as one block."""
        return f"{self.stdout}\n{self.stderr}" if self.stderr else self.stdout

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "requestId": self.request_id,
            "functionId": self.function_id,
            "repositoryId": self.repository_id,
            "state": self.state.value,
            "resultMap": dict(self.result_map),
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "truncated": self.truncated,
            "commit": self.commit.to_dict() if self.commit else None,
            "durationMs": self.duration_ms,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class Execution:
    """Engine-internal record of an execution, owned by the scheduler.

    ``history`` keeps every state entered with its timestamp, so callers
    and tests can see which stages an execution went through.
    """

    request: ExecutionRequest
    state: ExecutionState = ExecutionState.PENDING
    created_at: datetime = field(default_factory=utcnow)
    history: list[tuple[ExecutionState, datetime]] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    commit: CommitInfo | None = None
    result: ExecutionResult | None = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, self.created_at))

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def visited(self) -> list[ExecutionState]:
        return [state for state, _ in self.history]

    def transition_to(self, target: ExecutionState) -> None:
        """Move to *target*, enforcing ``VALID_TRANSITIONS``."""
        validate_transition(self.state, target)
        self.state = target
        self.history.append((target, utcnow()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "functionId": self.request.function_id,
            "repositoryId": self.request.repository_id,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "history": [{"state": s.value, "at": t.isoformat()} for s, t in self.history],
            "attempts": dict(self.attempts),
            "commit": self.commit.to_dict() if self.commit else None,
        }


@dataclass
class BatchReport:
    """Aggregated outcomes of several executions."""

    results: list[ExecutionResult] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in TERMINAL_STATES}
        for result in self.results:
            counts[result.state.value] += 1
        return counts

    @property
    def succeeded(self) -> bool:
        return all(r.state is ExecutionState.COMPLETED for r in self.results)

    def by_state(self, state: ExecutionState) -> list[ExecutionResult]:
        return [r for r in self.results if r.state is state]

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": self.counts,
            "results": [r.to_dict() for r in self.results],
        }
