from typing import Any, Optional

import httpx

from utils.errors import NonRetryableUpstreamError, TransientUpstreamError


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def raise_for_upstream_status(response: httpx.Response, upstream: str) -> None:
    """Map an HTTP error status onto the engine's error taxonomy.

    429 and 5xx are transient; every other 4xx is non-retryable.
    """
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise TransientUpstreamError(
            f"{upstream} rate limited",
            upstream=upstream,
            status_code=status,
            retry_after=_parse_retry_after(response),
        )
    if status >= 500:
        raise TransientUpstreamError(
            f"{upstream} server error {status}", upstream=upstream, status_code=status
        )
    raise NonRetryableUpstreamError(
        f"{upstream} rejected request with {status}", upstream=upstream, status_code=status
    )


def json_body(response: httpx.Response, upstream: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise NonRetryableUpstreamError(
            f"{upstream} returned a non-JSON body", upstream=upstream, status_code=response.status_code
        ) from e
