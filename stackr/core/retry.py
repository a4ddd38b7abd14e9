"""Exponential backoff for operations that may briefly fail.

A freshly pushed git tag and the container image built from it are not
published at the same moment; deploy-time pulls retry through this module
until the image shows up.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from .exceptions import RetryCancelledError, RetryExhaustedError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt count and delay curve for with_backoff."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given 1-based attempt fails."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    @classmethod
    def image_pull(cls) -> "RetryPolicy":
        """30s, 60s, 120s, 240s then capped at 5 minutes."""
        return cls(max_attempts=5, initial_delay=30.0, max_delay=300.0, multiplier=2.0)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    cancel_event: asyncio.Event | None = None,
    deadline: float | None = None,
    description: str = "operation",
) -> T:
    """Await operation until it succeeds or the policy runs out of attempts.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and delay curve
        cancel_event: Setting this event aborts any pending wait
        deadline: Absolute time.monotonic() value after which waiting stops
        description: Name used in log events

    Returns:
        The operation's result from the first successful attempt

    Raises:
        RetryExhaustedError: Every attempt failed
        RetryCancelledError: Cancelled or past the deadline while waiting
    """
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation()
        except Exception as e:
            last_error = e
        else:
            if attempt > 1:
                logger.info(
                    f"{description} succeeded after retry",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                )
            return result

        if attempt == policy.max_attempts:
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            f"{description} failed, retrying",
            attempt=attempt,
            max_attempts=policy.max_attempts,
            retry_in=delay,
            error=str(last_error),
        )
        await _wait(delay, cancel_event, deadline)

    raise RetryExhaustedError(policy.max_attempts, last_error)


async def _wait(delay: float, cancel_event: asyncio.Event | None, deadline: float | None) -> None:
    if deadline is not None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RetryCancelledError("retry cancelled: deadline exceeded")
        if remaining < delay:
            await _sleep_or_cancel(remaining, cancel_event)
            raise RetryCancelledError("retry cancelled: deadline exceeded")

    await _sleep_or_cancel(delay, cancel_event)


async def _sleep_or_cancel(delay: float, cancel_event: asyncio.Event | None) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return

    if cancel_event.is_set():
        raise RetryCancelledError("retry cancelled")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise RetryCancelledError("retry cancelled")
