from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import replace

from snapsync.errors import RateLimitedError, SyncCancelled
from snapsync.models import RateLimitState


logger = logging.getLogger(__name__)

DEFAULT_SAFETY_BUFFER = 10
DEFAULT_MAX_WAIT_SECONDS = 900.0
# GitHub sends no reset time with some secondary-limit responses.
FALLBACK_RESET_SECONDS = 60.0


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class RateLimiter:
    """Tracks GitHub API quota for one authenticated identity.

    Shared by every stage of a sync (and by every upload worker). The state
    is refreshed from the headers of each response, last response wins, and
    checked before every request. Waits happen outside the lock.
    """

    def __init__(
        self,
        *,
        safety_buffer: int = DEFAULT_SAFETY_BUFFER,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
        min_interval: float = 0.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.safety_buffer = max(0, safety_buffer)
        self.max_wait = max_wait
        self.min_interval = min_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = RateLimitState()
        self._last_request_at: float | None = None
        self.total_waited = 0.0

    @property
    def state(self) -> RateLimitState:
        with self._lock:
            return replace(self._state)

    def set_state(self, remaining: int | None, reset_at: float, limit: int | None = None) -> None:
        with self._lock:
            self._state = RateLimitState(remaining=remaining, limit=limit, reset_at=reset_at)

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        remaining = _parse_int(headers.get("x-ratelimit-remaining"))
        limit = _parse_int(headers.get("x-ratelimit-limit"))
        reset = _parse_int(headers.get("x-ratelimit-reset"))
        retry_after = _parse_int(headers.get("retry-after"))

        with self._lock:
            state = self._state
            if remaining is not None:
                state.remaining = remaining
            if limit is not None:
                state.limit = limit
            if reset is not None:
                state.reset_at = float(reset)
            if retry_after is not None:
                # A secondary limit; the primary reset in the same response does not apply.
                state.remaining = 0
                state.reset_at = self._clock() + max(0, retry_after)

    def mark_exhausted(self, reset_at: float | None = None, *, retry_after: float | None = None) -> None:
        with self._lock:
            now = self._clock()
            self._state.remaining = 0
            if retry_after is not None:
                self._state.reset_at = now + max(0.0, retry_after)
            elif reset_at is not None and reset_at > now:
                self._state.reset_at = reset_at
            else:
                self._state.reset_at = now + FALLBACK_RESET_SECONDS

    def seconds_until_reset(self) -> float:
        with self._lock:
            return max(0.0, self._state.reset_at - self._clock())

    def _required_wait(self) -> float:
        with self._lock:
            state = self._state
            now = self._clock()
            if state.remaining is None or state.remaining > self.safety_buffer:
                return 0.0
            if now >= state.reset_at:
                return 0.0
            return state.reset_at - now

    def before_request(self, cancel: threading.Event | None = None) -> None:
        """Block until a request may be issued without exhausting the quota."""
        wait = self._required_wait()
        if wait > 0:
            if wait > self.max_wait:
                raise RateLimitedError(
                    f"GitHub rate limit exhausted; resets in {int(wait)}s which exceeds the "
                    f"{int(self.max_wait)}s ceiling",
                    reset_at=self.state.reset_at,
                )
            logger.info("Rate limit low (%s remaining); pausing %.1fs until reset", self.state.remaining, wait)
            self._pause(wait, cancel)

        if self.min_interval > 0:
            with self._lock:
                now = self._clock()
                gap = 0.0
                if self._last_request_at is not None:
                    gap = self.min_interval - (now - self._last_request_at)
                self._last_request_at = now + max(0.0, gap)
            if gap > 0:
                self._pause(gap, cancel)

    def wait_for_reset(
        self,
        reset_at: float | None = None,
        cancel: threading.Event | None = None,
        *,
        retry_after: float | None = None,
        budget: float | None = None,
    ) -> float:
        """Called after GitHub rejected a request for quota reasons.

        Returns the seconds waited. Raises ``RateLimitedError`` without
        sleeping when the wait exceeds ``budget`` (or ``max_wait``).
        """
        self.mark_exhausted(reset_at, retry_after=retry_after)
        wait = self._required_wait()
        if budget is not None and wait > budget:
            raise RateLimitedError(
                f"GitHub rate limit exhausted; waiting another {int(wait)}s would exceed the "
                f"{int(self.max_wait)}s ceiling",
                reset_at=self.state.reset_at,
            )
        self.before_request(cancel)
        return wait

    def _pause(self, seconds: float, cancel: threading.Event | None) -> None:
        deadline = self._clock() + seconds
        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled("Sync cancelled while waiting for rate limit reset")
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            step = min(remaining, self.poll_interval) if self.poll_interval > 0 else remaining
            self._sleep(step)
            with self._lock:
                self.total_waited += step
