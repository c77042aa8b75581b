"""
Retry policy for sync operations, built on tenacity.

Exponential backoff with a cap, downward jitter and server retry-after hints.
Only transient errors are retried.
"""

import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import FeedSyncError, RateLimitedError


def is_transient(error: BaseException) -> bool:
    return isinstance(error, FeedSyncError) and error.transient


@dataclass
class BackoffPolicy:
    base_delay: float = 1.0
    max_delay: float = 60.0
    max_retries: int = 3
    jitter: float = 0.5  # Fraction of the delay that may be shaved off at random
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        self._exponential = wait_exponential(multiplier=self.base_delay, max=self.max_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        """
        Delay before the next attempt, used as the tenacity `wait`.

        base * 2**(attempt - 1), capped at max_delay, then jittered downwards.
        A server retry-after hint is a floor, even when it exceeds max_delay.
        """
        delay = self._exponential(retry_state)
        if self.jitter > 0:
            delay *= 1 - self.rng.uniform(0, min(self.jitter, 1.0))

        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay

    def retrying(
        self,
        sleep: Callable[[float], Awaitable[None]],
        before_sleep: Callable[[RetryCallState], None] | None = None,
    ) -> AsyncRetrying:
        """Retry controller: up to max_retries retries of transient errors, re-raising the last error."""
        return AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self,
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
