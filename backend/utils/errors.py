"""Error taxonomy shared by upstream clients, services and workers.

Workers only ever surface counts; these classes decide whether a unit of
work is retried, skipped, or failed.
"""

from __future__ import annotations

from typing import Optional


class ConsensusEngineError(Exception):
    """Base class for every error raised deliberately by the engine."""


class UpstreamError(ConsensusEngineError):
    def __init__(self, message: str, *, upstream: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.upstream = upstream
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Timeout, connection failure, 5xx or rate limit. Safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        upstream: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, upstream=upstream, status_code=status_code)
        self.retry_after = retry_after


class NonRetryableUpstreamError(UpstreamError):
    """Client error (4xx other than 429) or a response we cannot interpret."""


class CircuitOpenError(UpstreamError):
    """Raised without touching the network while a breaker is OPEN."""


class PayloadValidationError(ConsensusEngineError):
    """A provider payload failed boundary validation."""


class DataIntegrityError(ConsensusEngineError):
    """Invalid state transition or a duplicate on a deduplicated path."""


class ConfigValidationError(ConsensusEngineError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) or "invalid configuration")
        self.errors = list(errors)
