import asyncio
import random
from typing import Awaitable, Callable, Optional, Type, Tuple, TypeVar
import httpx

from utils.errors import TransientUpstreamError
from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            TransientUpstreamError,
            httpx.TimeoutException,
            httpx.NetworkError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    # Check exception type
    if isinstance(error, config.retryable_exceptions):
        return True

    # Check HTTP status code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


def _retry_after(error: Exception) -> Optional[float]:
    retry_after = getattr(error, "retry_after", None)
    if retry_after is None and isinstance(error, httpx.HTTPStatusError):
        retry_after = error.response.headers.get("Retry-After")
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except (TypeError, ValueError):
        return None


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args,
    config: Optional[RetryConfig] = None,
    name: Optional[str] = None,
    **kwargs,
) -> T:
    """Await ``func(*args, **kwargs)`` with bounded exponential-backoff retries."""
    config = config or RetryConfig()
    label = name or getattr(func, "__name__", "call")
    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_error = e

            if not is_retryable_error(e, config):
                logger.debug(
                    "Non-retryable error",
                    function=label,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                retry_after = _retry_after(e)
                if retry_after is not None:
                    delay = max(delay, min(retry_after, config.max_delay))
                logger.warning(
                    "Retrying after error",
                    function=label,
                    attempt=attempt + 1,
                    max_attempts=config.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "All retry attempts exhausted",
                    function=label,
                    attempts=config.max_attempts,
                    error=str(e),
                )

    raise last_error
