"""
Structured error types for the Chicon runner.

Every failure an execution can end with is a typed ``EngineError``. The
error carries a stable ``kind`` (the name reported to callers), a
``category`` matching the stage that produced it, and an explicit
``retryable`` flag that the scheduler reads instead of parsing messages.

Manifesto:
    - **Typed taxonomy:** one class per failure the engine can report
    - **Explicit retry semantics:** transient infrastructure failures are
      retryable by class default, logic failures never are
    - **Attached, not thrown across executions:** errors end up on the
      execution they belong to, never on a neighbour
    - **Chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         EngineError                           │
        │            (kind, category, retryable, context, cause)        │
        ├──────────────────────────────────────────────────────────────┤
        │  DefinitionError        ProvisioningError    SandboxError     │
        │  FunctionNotFound       RepositoryUnreachable ImagePullFailed │
        │  RepositoryNotFound     RepositoryRefNotFound SandboxStart-   │
        │  CapabilityRejected     RepositoryPathNotFound  Failed        │
        │                                               ExecutorNotFound│
        │  ExecutionError         CollectionError      RegistryUnavail- │
        │  ProcessCrashed         ResultUnreadable       able           │
        │  ProcessTimedOut                                              │
        └──────────────────────────────────────────────────────────────┘

    Retryable by default: RepositoryUnreachable, ImagePullFailed,
    RegistryUnavailable. Everything else surfaces immediately.

Examples:
    >>> err = ImagePullFailed("pull access denied", context={"image": "alpine:3.15"})
    >>> err.kind, err.retryable
    ('ImagePullFailed', True)
    >>> err.to_dict()["kind"]
    'ImagePullFailed'

Tags:
    error-handling, exception-hierarchy, retry-logic, chicon, execution

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Stage of the execution pipeline an error belongs to."""

    DEFINITION = "definition"       # Unknown ids, rejected capability profiles
    PROVISIONING = "provisioning"   # Repository checkout
    SANDBOX = "sandbox"             # Image pull, container start
    EXECUTION = "execution"         # The user script itself
    COLLECTION = "collection"       # Reading the result artifact
    REGISTRY = "registry"           # Talking to the catalog
    INTERNAL = "internal"           # Bugs, unexpected state


class EngineError(Exception):
    """Base class for every error the engine attaches to an execution.

    Subclasses set ``kind``, ``default_category`` and ``default_retryable``.
    ``retryable`` may still be overridden per instance, e.g. a
    ``RepositoryUnreachable`` caused by bad credentials is not worth retrying.
    """

    kind: str = "InternalError"
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> EngineError:
        """Add context to this error (fluent API)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{kind, message}`` shape used in execution results."""
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.context:
            data["context"] = dict(self.context)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, retryable={self.retryable})"


class InternalError(EngineError):
    """Unexpected failure inside the engine, attached to one execution."""


# ── Definition errors ────────────────────────────────────────────────────


class DefinitionError(EngineError):
    """The request references something the catalog cannot provide."""

    kind = "DefinitionError"
    default_category = ErrorCategory.DEFINITION


class FunctionNotFound(DefinitionError):
    kind = "FunctionNotFound"


class RepositoryNotFound(DefinitionError):
    kind = "RepositoryNotFound"


class CapabilityRejected(DefinitionError):
    """Capability profile contains unknown keys or non-boolean values."""

    kind = "CapabilityRejected"


# ── Provisioning errors ──────────────────────────────────────────────────


class ProvisioningError(EngineError):
    kind = "ProvisioningError"
    default_category = ErrorCategory.PROVISIONING


class RepositoryUnreachable(ProvisioningError):
    """Network or authentication failure while fetching the repository."""

    kind = "RepositoryUnreachable"
    default_retryable = True


class RepositoryRefNotFound(ProvisioningError):
    kind = "RepositoryRefNotFound"


class RepositoryPathNotFound(ProvisioningError):
    kind = "RepositoryPathNotFound"


# ── Sandbox errors ───────────────────────────────────────────────────────


class SandboxError(EngineError):
    kind = "SandboxError"
    default_category = ErrorCategory.SANDBOX


class ImagePullFailed(SandboxError):
    kind = "ImagePullFailed"
    default_retryable = True


class SandboxStartFailed(SandboxError):
    kind = "SandboxStartFailed"


class ExecutorNotFound(SandboxError):
    """The environment's executor does not exist inside the image."""

    kind = "ExecutorNotFound"


# ── Execution errors ─────────────────────────────────────────────────────


class ExecutionError(EngineError):
    kind = "ExecutionError"
    default_category = ErrorCategory.EXECUTION


class ProcessCrashed(ExecutionError):
    """Script exited non-zero or was killed by a signal."""

    kind = "ProcessCrashed"


class ProcessTimedOut(ExecutionError):
    kind = "ProcessTimedOut"


# ── Collection errors ────────────────────────────────────────────────────


class CollectionError(EngineError):
    kind = "CollectionError"
    default_category = ErrorCategory.COLLECTION


class ResultUnreadable(CollectionError):
    """The result artifact exists but cannot be read at all."""

    kind = "ResultUnreadable"


# ── Registry errors ──────────────────────────────────────────────────────


class RegistryUnavailable(EngineError):
    """Transport failure or unexpected response from the catalog."""

    kind = "RegistryUnavailable"
    default_category = ErrorCategory.REGISTRY
    default_retryable = True


def is_retryable(error: BaseException) -> bool:
    """Return True when *error* is an ``EngineError`` flagged retryable."""
    return isinstance(error, EngineError) and error.retryable


__all__ = [
    "CapabilityRejected",
    "CollectionError",
    "DefinitionError",
    "EngineError",
    "ErrorCategory",
    "ExecutionError",
    "ExecutorNotFound",
    "FunctionNotFound",
    "ImagePullFailed",
    "InternalError",
    "ProcessCrashed",
    "ProcessTimedOut",
    "ProvisioningError",
    "RegistryUnavailable",
    "RepositoryNotFound",
    "RepositoryPathNotFound",
    "RepositoryRefNotFound",
    "RepositoryUnreachable",
    "ResultUnreadable",
    "SandboxError",
    "SandboxStartFailed",
    "is_retryable",
]
