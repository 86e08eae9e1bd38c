"""Shared retry policy for network-bound operations.

Retryable kinds (network errors, timeouts, gas estimation failures) are
retried with a linearly increasing delay; everything else surfaces on the
first failure. Errors leave this module already classified.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from crosspay.errors import ErrorKind, SwapError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with delay ``base_delay * attempt`` (1s, 2s, ...)."""

    attempts: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    description: str = "operation",
    default_kind: ErrorKind = ErrorKind.UNKNOWN,
) -> T:
    """Run ``operation`` under the retry policy.

    Raises:
        SwapError: classified failure after the last attempt, or immediately
            for non-retryable kinds
    """
    last_error: SwapError | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = classify(e, default=default_kind)
            if not last_error.retryable:
                raise last_error
            if attempt < policy.attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{description} failed ({last_error.kind.value}, attempt {attempt}/"
                    f"{policy.attempts}), retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

    logger.error(f"{description} failed after {policy.attempts} attempts: {last_error.details}")
    raise last_error
