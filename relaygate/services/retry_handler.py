"""Backoff policies and the retry loop built on them."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff: base_delay * multiplier**n, capped at max_delay.

    `attempts` bounds how many times an operation runs in total. The session
    manager uses the same policy to space out its scheduled reconnections.
    """

    attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float | None = None

    def delay(self, retry_number: int) -> float:
        """Delay before retry number `retry_number` (0-based)."""
        value = self.base_delay * self.multiplier**retry_number
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value


class RetryHandler:
    """Runs an async operation until it succeeds or its policy gives up."""

    def __init__(
        self,
        policy: BackoffPolicy,
        retry_if: Callable[[Exception], bool] | None = None,
    ):
        if policy.attempts < 1:
            raise ValueError("A retry policy needs at least one attempt")
        self.policy = policy
        self.retry_if = retry_if

    def is_retryable(self, error: Exception) -> bool:
        return self.retry_if is None or self.retry_if(error)

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """
        Await `operation()` up to policy.attempts times.

        Errors rejected by `retry_if` propagate at once. When every attempt
        fails, the last error is raised.
        """
        attempts = self.policy.attempts
        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt == attempts - 1:
                    logger.error(f"All {attempts} attempts failed for {name}: {e}")
                    raise
                wait_time = self.policy.delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{attempts} failed for {name}: {e}. "
                    f"Retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)
        raise AssertionError("unreachable")
