"""Execution engine: policy, provisioning, sandbox, collection, scheduling."""

from chicon.execution.collector import Assignment, Ignored, ResultCollector, parse_result
from chicon.execution.models import (
    BatchReport,
    Execution,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    InvalidTransitionError,
)
from chicon.execution.policy import NetworkMode, SandboxPolicy, SandboxProfile, policy_for
from chicon.execution.provisioner import RepositoryProvisioner
from chicon.execution.retry import ExponentialBackoff, NoRetry, RetryContext
from chicon.execution.sandbox import ContainerRuntime, Sandbox, SandboxConfig, SandboxState
from chicon.execution.scheduler import ExecutionScheduler
from chicon.execution.workspace import Workspace

__all__ = [
    "Assignment",
    "BatchReport",
    "ContainerRuntime",
    "Execution",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionScheduler",
    "ExecutionState",
    "ExponentialBackoff",
    "Ignored",
    "InvalidTransitionError",
    "NetworkMode",
    "NoRetry",
    "RepositoryProvisioner",
    "ResultCollector",
    "RetryContext",
    "Sandbox",
    "SandboxConfig",
    "SandboxPolicy",
    "SandboxProfile",
    "SandboxState",
    "Workspace",
    "parse_result",
    "policy_for",
]
