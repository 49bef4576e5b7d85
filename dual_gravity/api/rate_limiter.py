"""
Catalog Rate Limiter

Token bucket limiter shared by every catalog client of the process,
with an optional per-minute sliding window on top.
"""

import asyncio
import time
from collections import deque
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class UnifiedRateLimiter:
    """
    Token bucket with an optional sliding minute window.

    The bucket absorbs short bursts (twice the per-second rate by
    default); the window caps sustained usage.
    """

    def __init__(
        self,
        calls_per_second: Optional[float] = None,
        calls_per_minute: Optional[int] = None,
        burst_size: Optional[int] = None,
        service_name: str = "catalog"
    ):
        """
        Initialize the limiter.

        Args:
            calls_per_second: Sustained request rate (None disables the bucket)
            calls_per_minute: Maximum requests in any 60 second window
            burst_size: Bucket capacity (defaults to calls_per_second * 2)
            service_name: Name used in log events
        """
        self.calls_per_second = calls_per_second
        self.calls_per_minute = calls_per_minute
        self.service_name = service_name

        if calls_per_second:
            self.burst_size = burst_size or max(int(calls_per_second * 2), 1)
            self.tokens = float(self.burst_size)
        else:
            self.burst_size = None
            self.tokens = 0.0
        self.last_refill = time.monotonic()

        self.request_times: deque = deque()
        self.lock = asyncio.Lock()
        self.logger = logger.bind(component=f"RateLimiter-{service_name}")

    @classmethod
    def for_catalog(cls, calls_per_second: float = 10.0) -> "UnifiedRateLimiter":
        """Preset for the music catalog API."""
        return cls(
            calls_per_second=calls_per_second,
            calls_per_minute=int(calls_per_second * 60 * 0.9),
            service_name="Catalog"
        )

    async def wait_if_needed(self) -> None:
        """Block until one more request is allowed, then record it."""
        async with self.lock:
            now = time.monotonic()
            self._drop_expired(now)

            wait_time = 0.0
            if self.calls_per_second:
                wait_time = max(wait_time, self._bucket_wait(now))
            if self.calls_per_minute:
                wait_time = max(wait_time, self._window_wait(now))

            if wait_time > 0:
                self.logger.debug("Rate limit wait", wait_time=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                now = time.monotonic()
                if self.calls_per_second:
                    self._refill(now)

            self.request_times.append(now)
            if self.calls_per_second:
                self.tokens = max(0.0, self.tokens - 1)

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        self.tokens = min(float(self.burst_size), self.tokens + elapsed * self.calls_per_second)
        self.last_refill = now

    def _bucket_wait(self, now: float) -> float:
        self._refill(now)
        if self.tokens >= 1:
            return 0.0
        return (1.0 - self.tokens) / self.calls_per_second

    def _window_wait(self, now: float) -> float:
        if len(self.request_times) < self.calls_per_minute:
            return 0.0
        return max(0.0, 60 - (now - self.request_times[0]))

    def _drop_expired(self, now: float) -> None:
        cutoff = now - 60
        while self.request_times and self.request_times[0] < cutoff:
            self.request_times.popleft()

    def get_current_usage(self) -> Dict[str, Any]:
        now = time.monotonic()
        recent = sum(1 for t in self.request_times if t > now - 60)
        usage: Dict[str, Any] = {"requests_last_minute": recent}
        if self.calls_per_second:
            usage["tokens_available"] = round(self.tokens, 2)
            usage["burst_capacity"] = self.burst_size
        if self.calls_per_minute:
            usage["minute_usage_percent"] = recent / self.calls_per_minute * 100
        return usage

    def reset(self) -> None:
        self.request_times.clear()
        if self.calls_per_second:
            self.tokens = float(self.burst_size)
        self.last_refill = time.monotonic()
