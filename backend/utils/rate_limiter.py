import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional
from dataclasses import dataclass

from utils.errors import TransientUpstreamError
from utils.logger import get_logger

logger = get_logger("rate_limiter")

# Small buffer added to computed waits so the oldest stamp has actually left the window.
WAIT_BUFFER_SECONDS = 0.1


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an API endpoint"""

    requests_per_window: int
    window_seconds: float = 1.0


class SlidingWindow:
    """Timestamps of granted requests inside the trailing window."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float]):
        self.config = config
        self._clock = clock
        self.stamps: Deque[float] = deque()

    def evict(self, now: float) -> None:
        """Drop stamps that have left the window."""
        cutoff = now - self.config.window_seconds
        while self.stamps and self.stamps[0] <= cutoff:
            self.stamps.popleft()

    def wait_time(self) -> float:
        """Seconds until a slot frees up (0 when one is available now)."""
        now = self._clock()
        self.evict(now)
        if len(self.stamps) < self.config.requests_per_window:
            return 0.0
        oldest = self.stamps[0]
        return max(0.0, self.config.window_seconds - (now - oldest)) + WAIT_BUFFER_SECONDS

    def record(self) -> None:
        self.stamps.append(self._clock())


class SlidingWindowRateLimiter:
    """Per-endpoint sliding-window rate limiter.

    State is in-memory and per process. Every check evicts stale stamps, so a
    window never holds more than ``requests_per_window`` entries.
    """

    LIMITS = {
        "hyperliquid_info": RateLimitConfig(requests_per_window=10, window_seconds=1),
        "kucoin_public": RateLimitConfig(requests_per_window=100, window_seconds=60),
        "telegram_send": RateLimitConfig(requests_per_window=30, window_seconds=1),
    }
    DEFAULT_LIMIT = RateLimitConfig(requests_per_window=10, window_seconds=1)

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        *,
        max_waits: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self._limits = dict(self.LIMITS)
        if limits:
            self._limits.update(limits)
        self._max_waits = max(1, int(max_waits))
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, SlidingWindow] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_window(self, endpoint: str) -> SlidingWindow:
        """Get or create the window for an endpoint"""
        if endpoint not in self._windows:
            config = self._limits.get(endpoint, self.DEFAULT_LIMIT)
            self._windows[endpoint] = SlidingWindow(config, self._clock)
        return self._windows[endpoint]

    def _get_lock(self, endpoint: str) -> asyncio.Lock:
        """Get or create a lock for an endpoint"""
        if endpoint not in self._locks:
            self._locks[endpoint] = asyncio.Lock()
        return self._locks[endpoint]

    async def acquire(self, endpoint: str) -> float:
        """
        Wait for a slot and claim it. Returns total seconds waited.

        Waits at most ``max_waits`` times; under sustained saturation the
        caller gets a TransientUpstreamError instead of waiting forever.
        """
        lock = self._get_lock(endpoint)
        waited = 0.0
        async with lock:
            window = self._get_window(endpoint)
            for _ in range(self._max_waits + 1):
                wait_time = window.wait_time()
                if wait_time <= 0:
                    window.record()
                    return waited
                logger.debug("Rate limit wait", endpoint=endpoint, wait_seconds=round(wait_time, 3))
                await self._sleep(wait_time)
                waited += wait_time

        raise TransientUpstreamError(
            f"Rate limit slot for {endpoint} not available after {self._max_waits} waits",
            upstream=endpoint,
        )

    def check(self, endpoint: str) -> bool:
        """Check if a request would be allowed without consuming"""
        return self._get_window(endpoint).wait_time() <= 0

    def get_status(self) -> Dict[str, dict]:
        """Get current rate limit status for all endpoints"""
        status = {}
        now = self._clock()
        for endpoint, window in self._windows.items():
            window.evict(now)
            status[endpoint] = {
                "in_window": len(window.stamps),
                "limit": f"{window.config.requests_per_window}/{window.config.window_seconds}s",
            }
        return status
