"""
Retry with exponential backoff.

Delay before attempt n+1 is min(base_delay * backoff_factor ** (n - 1), max_delay).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from catalog.services.config import FetchConfig
from catalog.services.errors import NetworkError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    @classmethod
    def from_config(cls, config: FetchConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_ms / 1000,
            max_delay=config.max_delay_ms / 1000,
            backoff_factor=config.backoff_factor,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[Exception], ...] = (NetworkError,),
    on_retry: Callable[[Exception, int, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    deadline: float | None = None,
    description: str = "operation",
) -> T:
    """
    Run ``fn`` up to ``policy.max_attempts`` times.

    Exceptions outside ``retry_on`` propagate immediately. When the budget is
    spent a single NetworkError is raised carrying the attempt count and the
    last error's message.

    ``deadline`` is a time.monotonic() timestamp: delays are capped by the
    time left, and no further attempt starts once it has passed.
    """
    last_error: Exception | None = None
    attempts = 0

    for attempt in range(1, policy.max_attempts + 1):
        attempts = attempt
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt == policy.max_attempts:
                break

            delay = policy.delay_for(attempt)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"{description}: deadline passed, not retrying")
                    break
                delay = min(delay, remaining)

            if on_retry is not None:
                on_retry(e, attempt, delay)
            await sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise NetworkError(
        f"{description} failed after {attempts} attempts: {last_error}",
        context={"last_error": str(last_error)},
        status=getattr(last_error, "status", None),
        attempts=attempts,
    ) from last_error
