"""
Bounded retry with exponential backoff for provider calls.

Only ``ProviderUnavailable`` (timeouts, network errors, 5xx) is retried;
everything else propagates on the first attempt.

Usage:
    >>> policy = RetryPolicy(base_delay=0.5, max_delay=8.0, max_attempts=4)
    >>> status = await policy.run(gateway.get_order, "order_123")
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ordersaga.core.exceptions import ProviderUnavailable
from ordersaga.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


@dataclass
class RetryPolicy:
    """
    Exponential backoff: base_delay * 2**attempt, capped at max_delay.

    Attributes:
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        max_attempts: Total attempts including the first one
        timeout: Per-attempt timeout in seconds (None = no timeout)
        retry_on: Exception types considered transient
    """

    base_delay: float = 0.5
    max_delay: float = 8.0
    max_attempts: int = 4
    timeout: float | None = 10.0
    retry_on: tuple[type[Exception], ...] = (ProviderUnavailable,)
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    def delays(self) -> list[float]:
        return [self.delay_for(attempt) for attempt in range(self.max_attempts - 1)]

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Call fn until it succeeds or attempts run out.

        Raises:
            RetryExhausted: After max_attempts transient failures
            Exception: Any non-transient error, immediately
        """
        last_error: Exception | None = None

        for attempt in range(self.max_attempts):
            try:
                return await call_with_timeout(fn(*args, **kwargs), self.timeout)
            except self.retry_on as e:
                last_error = e
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed: {e}; retrying in {delay:.2f}s"
                )
                await self.sleep(delay)

        raise RetryExhausted(self.max_attempts, last_error)  # type: ignore[arg-type]


async def call_with_timeout(awaitable: Awaitable[T], timeout: float | None) -> T:
    """
    Await with a timeout, turning expiry into ProviderUnavailable.

    Cancellation of the caller propagates untouched.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        msg = f"Provider call timed out after {timeout}s"
        raise ProviderUnavailable(msg) from e
