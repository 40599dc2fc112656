"""Retry strategies with exponential backoff for transient infrastructure failures.

Only errors flagged ``retryable`` (``ImagePullFailed``, network-class
``RepositoryUnreachable``, ``RegistryUnavailable``) are retried. Policy and
logic failures surface on the first attempt.

Example:
    >>> strategy = ExponentialBackoff(max_attempts=3, base_delay=1.0, max_delay=30.0)
    >>> ctx = RetryContext(strategy)
    >>> checkout = await ctx.run_async(provisioner.acquire, repository)
    >>> ctx.attempts
    1
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from chicon.core.errors import is_retryable

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retrying after failed *attempt* (1-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether another attempt is allowed after *attempt* failed with *error*."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay) ± jitter

    Attributes:
        max_attempts: Total attempts, including the first one
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to avoid synchronized retries
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retry_on: Predicate deciding which errors are worth retrying
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retry_on: Callable[[BaseException], bool] = is_retryable

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if attempt >= self.max_attempts:
            return False
        return self.retry_on(error)


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks attempts of one retried operation.

    ``on_retry`` is called with ``(attempt, error, delay)`` before each
    backoff sleep.
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    attempt: int = field(default=0, init=False)
    errors: list[BaseException] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    @property
    def last_error(self) -> BaseException | None:
        return self.errors[-1] if self.errors else None

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await *func* until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted or not allowed.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                self.errors.append(exc)
                if not self.strategy.should_retry(self.attempt, exc):
                    raise
                delay = self.strategy.next_delay(self.attempt)
                if self.on_retry:
                    self.on_retry(self.attempt, exc, delay)
                await asyncio.sleep(delay)
