"""
Unit tests for retry, circuit breaker and background task helpers.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from shared.background import BackgroundTaskSet
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.retry import RetryConfig, RetryError, retry_call, retry_on_exception


class TestRetry:
    """Test cases for retry_call."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])

        result = await retry_call(func, exceptions=(ConnectionError,), config=RetryConfig.fixed(2, 0))

        assert result == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_last_exception(self):
        func = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(RetryError) as exc_info:
            await retry_call(func, exceptions=(ConnectionError,), config=RetryConfig.fixed(1, 0))

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate_immediately(self):
        func = AsyncMock(side_effect=KeyError("bad"))

        with pytest.raises(KeyError):
            await retry_call(func, exceptions=(ConnectionError,), config=RetryConfig.fixed(3, 0))

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_fixed_delay_between_attempts(self):
        func = AsyncMock(side_effect=[ConnectionError(), "ok"])

        with patch("shared.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_call(func, exceptions=(ConnectionError,), config=RetryConfig.fixed(2, 0.6))

        sleep.assert_awaited_once_with(0.6)

    @pytest.mark.asyncio
    async def test_decorator(self):
        calls = []

        @retry_on_exception(exceptions=(ConnectionError,), config=RetryConfig.fixed(1, 0))
        async def flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise ConnectionError()
            return value * 2

        assert await flaky(21) == 42
        assert calls == [21, 21]
        assert flaky.__name__ == "flaky"


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, name="test")
        failing = AsyncMock(side_effect=ConnectionError())

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.get_state()["state"] == CircuitBreakerState.OPEN.value

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, name="test")
        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError()))

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.get_state()["state"] == CircuitBreakerState.CLOSED.value


class TestBackgroundTaskSet:
    """Test cases for BackgroundTaskSet."""

    @pytest.mark.asyncio
    async def test_failures_are_contained(self):
        tasks = BackgroundTaskSet("test")

        async def boom():
            raise RuntimeError("boom")

        task = tasks.spawn(boom(), name="boom")
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        tasks = BackgroundTaskSet("test")
        tasks.spawn(asyncio.sleep(60), name="slow")

        cancelled = await tasks.drain(timeout=0.01)

        assert cancelled == 1
