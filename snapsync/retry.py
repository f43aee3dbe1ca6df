from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from snapsync.errors import RateLimitedError, SyncCancelled, TransientError
from snapsync.rate_limit import RateLimiter


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retries with exponential backoff for transient GitHub failures.

    ``max_attempts`` counts the first try. Transient errors back off
    ``base_delay * 2**(attempt-1)`` seconds (capped at ``max_delay``, +-25%
    jitter). Rate-limit rejections wait for the quota reset instead and do
    not use up attempts; their waits are bounded by the limiter's
    ``max_wait`` in total, and by ``max_rate_limit_retries`` in number.
    Anything else is raised immediately.
    """

    rate_limiter: RateLimiter | None = None
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_rate_limit_retries: int = 10
    jitter: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.75 + random.random() * 0.5
        return delay

    def call(
        self,
        func: Callable[[], T],
        *,
        operation: str,
        on_retry: Callable[[int, Exception], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> T:
        attempt = 1
        rate_limit_hits = 0
        quota_waited = 0.0
        while True:
            try:
                return func()
            except RateLimitedError as exc:
                rate_limit_hits += 1
                if self.rate_limiter is None or rate_limit_hits > self.max_rate_limit_retries:
                    raise
                logger.warning("%s hit the rate limit (%d time(s)); waiting for the quota", operation, rate_limit_hits)
                if on_retry is not None:
                    on_retry(attempt, exc)
                quota_waited += self.rate_limiter.wait_for_reset(
                    exc.reset_at,
                    cancel,
                    retry_after=exc.retry_after,
                    budget=self.rate_limiter.max_wait - quota_waited,
                )
                continue
            except TransientError as exc:
                if attempt >= self.max_attempts:
                    logger.error("%s failed after %d attempts: %s", operation, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed on attempt %d/%d: %s; retrying in %.2fs",
                    operation,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                if cancel is not None and cancel.is_set():
                    raise SyncCancelled() from exc
                self.sleep(delay)
            attempt += 1
