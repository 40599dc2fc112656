"""Tests for retry strategies."""

from __future__ import annotations

import pytest

from chicon.core.errors import (
    ExecutorNotFound,
    ImagePullFailed,
    RegistryUnavailable,
    RepositoryRefNotFound,
    RepositoryUnreachable,
)
from chicon.execution.retry import ExponentialBackoff, NoRetry, RetryContext


class TestExponentialBackoff:
    """Tests for ExponentialBackoff strategy."""

    def test_default_configuration(self):
        strategy = ExponentialBackoff()
        assert strategy.max_attempts == 3
        assert strategy.base_delay == 1.0
        assert strategy.max_delay == 30.0
        assert strategy.multiplier == 2.0
        assert strategy.jitter is True

    def test_retries_transient_errors_within_limit(self):
        strategy = ExponentialBackoff(max_attempts=3)
        assert strategy.should_retry(1, ImagePullFailed("rate limited")) is True
        assert strategy.should_retry(2, RepositoryUnreachable("timeout")) is True

    def test_stops_at_max_attempts(self):
        strategy = ExponentialBackoff(max_attempts=3)
        assert strategy.should_retry(3, ImagePullFailed("rate limited")) is False

    def test_never_retries_logic_failures(self):
        strategy = ExponentialBackoff(max_attempts=10)
        assert strategy.should_retry(1, ExecutorNotFound("no /bin/bash")) is False
        assert strategy.should_retry(1, RepositoryRefNotFound("no branch")) is False
        assert strategy.should_retry(1, ValueError("boom")) is False

    def test_per_instance_override(self):
        strategy = ExponentialBackoff()
        assert strategy.should_retry(1, RepositoryUnreachable("auth", retryable=False)) is False

    def test_custom_predicate(self):
        strategy = ExponentialBackoff(retry_on=lambda exc: isinstance(exc, KeyError))
        assert strategy.should_retry(1, KeyError("x")) is True
        assert strategy.should_retry(1, ImagePullFailed("x")) is False

    def test_delay_calculation_no_jitter(self):
        strategy = ExponentialBackoff(base_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=False)
        assert strategy.next_delay(1) == 1.0
        assert strategy.next_delay(2) == 2.0
        assert strategy.next_delay(3) == 4.0
        assert strategy.next_delay(5) == 16.0

    def test_delay_capped_at_max(self):
        strategy = ExponentialBackoff(base_delay=10.0, multiplier=2.0, max_delay=30.0, jitter=False)
        assert strategy.next_delay(3) == 30.0
        assert strategy.next_delay(10) == 30.0

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= strategy.next_delay(1) <= 5.0


class TestNoRetry:
    def test_never_retries(self):
        strategy = NoRetry()
        assert strategy.should_retry(1, ImagePullFailed("x")) is False
        assert strategy.next_delay(1) == 0.0


class TestRetryContext:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        async def ok():
            return "done"

        ctx = RetryContext(ExponentialBackoff(base_delay=0.0, jitter=False))
        assert await ctx.run_async(ok) == "done"
        assert ctx.attempts == 1
        assert ctx.last_error is None

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        async def flaky(image):
            calls.append(image)
            if len(calls) < 3:
                raise ImagePullFailed("toomanyrequests")
            return image

        retries = []
        ctx = RetryContext(
            ExponentialBackoff(max_attempts=3, base_delay=0.0, jitter=False),
            on_retry=lambda attempt, exc, delay: retries.append(attempt),
        )
        assert await ctx.run_async(flaky, "alpine:3.15") == "alpine:3.15"
        assert ctx.attempts == 3
        assert retries == [1, 2]
        assert len(ctx.errors) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        async def always_fails():
            raise RegistryUnavailable("503")

        ctx = RetryContext(ExponentialBackoff(max_attempts=2, base_delay=0.0, jitter=False))
        with pytest.raises(RegistryUnavailable):
            await ctx.run_async(always_fails)
        assert ctx.attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        async def broken():
            raise ExecutorNotFound("missing")

        ctx = RetryContext(ExponentialBackoff(max_attempts=5, base_delay=0.0))
        with pytest.raises(ExecutorNotFound):
            await ctx.run_async(broken)
        assert ctx.attempts == 1
