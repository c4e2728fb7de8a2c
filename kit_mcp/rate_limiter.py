"""Sliding-window rate limiting for Kit API requests."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import anyio

from kit_mcp.config import RateLimitConfig

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
# Wait used when the window is full but holds no records to age out.
EMPTY_WINDOW_WAIT = 1.0


@dataclass
class RequestRecord:
    timestamp: float
    count: int = 1


class RateLimiter:
    """
    Admission control over a trailing 60 second window.

    Callers await ``await_admission`` before each request. The limiter
    never raises for "too many requests"; it sleeps until the oldest records
    age out of the window.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._requests: list[RequestRecord] = []

    def _purge(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        self._requests = [req for req in self._requests if req.timestamp > cutoff]

    def _requests_in_window(self) -> int:
        return sum(req.count for req in self._requests)

    def can_admit(self) -> bool:
        """Check if a request can be made without exceeding the per-minute limit."""
        self._purge(self._clock())
        return self._requests_in_window() < self.config.requests_per_minute

    def record(self, count: int = 1) -> None:
        self._requests.append(RequestRecord(timestamp=self._clock(), count=count))

    async def await_admission(self) -> None:
        """Suspend until the window has room, then record one request."""
        while not self.can_admit():
            if self._requests:
                wait = WINDOW_SECONDS - (self._clock() - self._requests[0].timestamp)
            else:
                wait = EMPTY_WINDOW_WAIT
            wait = max(0.0, min(wait, self.config.max_retry_delay))
            logger.debug("Rate limit reached, waiting %.2fs for admission", wait)
            await self._sleep(wait)
        self.record()

    def compute_backoff(self, attempt: int) -> float:
        """Exponential backoff for ``attempt`` (1-based) with up to 10% jitter."""
        exponential = self.config.retry_delay * 2 ** (attempt - 1)
        jitter = random.random() * 0.1 * exponential
        return min(exponential + jitter, self.config.max_retry_delay)

    def get_status(self) -> dict[str, float | int]:
        now = self._clock()
        self._purge(now)

        requests_in_last_minute = self._requests_in_window()
        remaining = max(0, self.config.requests_per_minute - requests_in_last_minute)
        reset_time = self._requests[0].timestamp + WINDOW_SECONDS if self._requests else now

        return {
            "requests_in_last_minute": requests_in_last_minute,
            "remaining_requests": remaining,
            "reset_time": reset_time,
        }
