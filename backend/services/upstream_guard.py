"""Rate limiter + circuit breaker + retry + timeout around one upstream's calls."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from services.circuit_breaker import CircuitBreaker
from utils.errors import CircuitOpenError, TransientUpstreamError
from utils.logger import get_logger
from utils.rate_limiter import SlidingWindowRateLimiter
from utils.retry import RetryConfig, is_retryable_error, retry_call

logger = get_logger("upstream_guard")

T = TypeVar("T")


class UpstreamGuard:
    """Every external call made by a client goes through ``call``.

    Order per attempt: breaker gate, rate-limit slot, timed call. Only
    retryable failures feed the breaker; client errors pass straight
    through without opening it.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        *,
        rate_limiter: SlidingWindowRateLimiter,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 10.0,
    ):
        self.name = name
        self.endpoint = endpoint
        self.rate_limiter = rate_limiter
        self.breaker = breaker or CircuitBreaker(name)
        self.retry_config = retry_config or RetryConfig()
        self.timeout_seconds = timeout_seconds

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async def attempt() -> T:
            if not self.breaker.allow_request():
                raise CircuitOpenError(
                    f"{self.name} circuit open, retry in {self.breaker.retry_in():.1f}s",
                    upstream=self.name,
                )
            await self.rate_limiter.acquire(self.endpoint)
            try:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                self.breaker.record_failure(e)
                raise TransientUpstreamError(
                    f"{self.name} call timed out after {self.timeout_seconds}s",
                    upstream=self.name,
                ) from e
            except Exception as e:
                if is_retryable_error(e, self.retry_config):
                    self.breaker.record_failure(e)
                raise
            self.breaker.record_success()
            return result

        label = f"{self.name}.{getattr(func, '__name__', 'call')}"
        return await retry_call(attempt, config=self.retry_config, name=label)

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "timeout_seconds": self.timeout_seconds,
            "breaker": self.breaker.get_trip_stats(),
        }
