"""Tests for the exponential backoff helper."""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from stackr.core.exceptions import RetryCancelledError, RetryExhaustedError
from stackr.core.retry import RetryPolicy, with_backoff


class TestRetryPolicy:
    def test_delay_curve(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=5.0, multiplier=2.0)

        assert [policy.delay_for(i) for i in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_image_pull_policy(self):
        policy = RetryPolicy.image_pull()

        assert policy.max_attempts == 5
        assert [policy.delay_for(i) for i in range(1, 6)] == [30.0, 60.0, 120.0, 240.0, 300.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


@pytest.mark.asyncio
class TestWithBackoff:
    """Retry loop behaviour."""

    async def test_returns_first_success(self):
        operation = AsyncMock(return_value="done")

        result = await with_backoff(operation, RetryPolicy(max_attempts=3, initial_delay=0))

        assert result == "done"
        assert operation.await_count == 1

    async def test_retries_until_success(self):
        operation = AsyncMock(side_effect=[RuntimeError("a"), RuntimeError("b"), "ok"])

        result = await with_backoff(operation, RetryPolicy(max_attempts=3, initial_delay=0))

        assert result == "ok"
        assert operation.await_count == 3

    async def test_exhaustion_sleeps_between_attempts_only(self):
        """Four attempts wait 10ms, 20ms, 40ms and never after the last one."""
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        policy = RetryPolicy(max_attempts=4, initial_delay=0.01, max_delay=1.0, multiplier=2.0)

        with patch("stackr.core.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(RetryExhaustedError) as exc_info:
                await with_backoff(operation, policy)

        assert operation.await_count == 4
        assert [call.args[0] for call in mock_sleep.await_args_list] == pytest.approx(
            [0.01, 0.02, 0.04]
        )
        assert exc_info.value.attempts == 4
        assert str(exc_info.value.last_error) == "boom"

    async def test_exhaustion_real_timing(self):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        policy = RetryPolicy(max_attempts=4, initial_delay=0.01, max_delay=1.0)

        started = time.monotonic()
        with pytest.raises(RetryExhaustedError):
            await with_backoff(operation, policy)
        elapsed = time.monotonic() - started

        assert elapsed >= 0.065
        assert elapsed < 1.0

    async def test_cancel_event_interrupts_wait(self):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        cancel = asyncio.Event()
        policy = RetryPolicy(max_attempts=3, initial_delay=10.0, max_delay=10.0)

        asyncio.get_running_loop().call_later(0.05, cancel.set)
        started = time.monotonic()
        with pytest.raises(RetryCancelledError):
            await with_backoff(operation, policy, cancel_event=cancel)

        assert time.monotonic() - started < 5
        assert operation.await_count == 1

    async def test_cancelled_is_not_exhausted(self):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(RetryCancelledError) as exc_info:
            await with_backoff(operation, RetryPolicy(initial_delay=1.0), cancel_event=cancel)

        assert not isinstance(exc_info.value, RetryExhaustedError)

    async def test_deadline_cancels_wait(self):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        policy = RetryPolicy(max_attempts=5, initial_delay=10.0, max_delay=10.0)

        started = time.monotonic()
        with pytest.raises(RetryCancelledError, match="deadline"):
            await with_backoff(operation, policy, deadline=time.monotonic() + 0.05)

        assert time.monotonic() - started < 5

    async def test_deadline_already_passed(self):
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RetryCancelledError):
            await with_backoff(
                operation, RetryPolicy(initial_delay=1.0), deadline=time.monotonic() - 1
            )

        assert operation.await_count == 1
