import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Optional

from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("circuit_breaker")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one upstream's breaker."""

    failure_threshold: int = 5  # Consecutive transient failures before opening
    reset_timeout_seconds: float = 60.0  # Time in OPEN before a trial call is allowed


@dataclass
class BreakerTripEvent:
    """One CLOSED/HALF_OPEN -> OPEN transition."""

    name: str
    triggered_at: datetime
    failure_count: int
    last_error: Optional[str]


class CircuitBreaker:
    """
    Three-state breaker for a single upstream.

    CLOSED counts consecutive failures and opens at the threshold. OPEN
    rejects calls until the reset timeout has elapsed, then reads as
    HALF_OPEN on the next ``state`` access regardless of how many calls were
    attempted meanwhile. HALF_OPEN lets calls through: one success closes
    the breaker, one failure re-opens it.
    """

    TRIP_HISTORY_LIMIT = 50

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._trip_history: Deque[BreakerTripEvent] = deque(maxlen=self.TRIP_HISTORY_LIMIT)

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.config.reset_timeout_seconds:
                self._state = BreakerState.HALF_OPEN
                logger.info("Circuit breaker half-open", breaker=self.name)
        return self._state

    def allow_request(self) -> bool:
        return self.state != BreakerState.OPEN

    def retry_in(self) -> float:
        """Seconds until an OPEN breaker admits a trial call."""
        if self.state != BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.config.reset_timeout_seconds - (self._clock() - self._opened_at))

    def record_success(self):
        if self._state != BreakerState.CLOSED:
            logger.info("Circuit breaker closed", breaker=self.name)
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self, error: Optional[BaseException] = None) -> Optional[BreakerTripEvent]:
        """Count a transient failure. Returns the trip event if this call opened the breaker."""
        self._last_error = str(error) if error is not None else None
        state = self.state

        if state == BreakerState.HALF_OPEN:
            return self._trip()

        if state == BreakerState.OPEN:
            return None

        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            return self._trip()
        return None

    def _trip(self) -> BreakerTripEvent:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        event = BreakerTripEvent(
            name=self.name,
            triggered_at=utcnow(),
            failure_count=self._failure_count,
            last_error=self._last_error,
        )
        self._trip_history.append(event)
        logger.warning(
            "Circuit breaker opened",
            breaker=self.name,
            failure_count=self._failure_count,
            reset_timeout_seconds=self.config.reset_timeout_seconds,
            last_error=self._last_error,
        )
        return event

    def get_trip_stats(self) -> dict:
        """Get statistics on trips."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "retry_in_seconds": round(self.retry_in(), 3),
            "last_error": self._last_error,
            "total_trips_recorded": len(self._trip_history),
            "recent_trips": [
                {
                    "triggered_at": t.triggered_at.isoformat(),
                    "failure_count": t.failure_count,
                    "last_error": t.last_error,
                }
                for t in list(self._trip_history)[-5:]
            ],
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout_seconds": self.config.reset_timeout_seconds,
            },
        }
