"""
Shared HTTP plumbing for upstream provider clients.

- post_json: non-streaming POST with tenacity retries on transient
  network errors (never on HTTP status errors, so a 429 is not retried)
- raise_for_upstream_status: maps non-2xx responses onto the error taxonomy
- iter_sse_data: yields the ``data:`` payloads of a server-sent event stream
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from briefing_rag.errors import QuotaExceeded, UpstreamError

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

MIN_RETRY_WAIT = 0.2  # seconds
MAX_RETRY_WAIT = 2.0  # seconds

# Fragments that identify quota/rate-limit failures in provider error bodies
QUOTA_MARKERS = ("resource_exhausted", "quota", "rate limit", "rate_limit")

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"

MAX_ERROR_BODY_CHARS = 500


def _is_quota_error(status_code: int, body: str) -> bool:
    if status_code == 429:
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


def raise_for_upstream_status(response: httpx.Response, provider: str, body: str) -> None:
    """
    Raise the matching pipeline error for a non-2xx response.

    Args:
        response: The provider response.
        provider: Provider name used in messages and logs.
        body: Response body text (already read for streaming responses).

    Raises:
        QuotaExceeded: For 429 or quota-flavoured error bodies.
        UpstreamError: For every other non-2xx status.
    """
    if response.is_success:
        return

    snippet = body[:MAX_ERROR_BODY_CHARS]
    details = {"provider": provider, "status_code": response.status_code}

    if _is_quota_error(response.status_code, body):
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            details["retry_after"] = retry_after
        logger.warning("upstream_quota_exceeded", body=snippet, **details)
        raise QuotaExceeded(f"{provider} quota exceeded: {snippet}", details=details)

    logger.error("upstream_http_error", body=snippet, **details)
    raise UpstreamError(
        f"{provider} API error {response.status_code}: {snippet}", details=details
    )


async def post_json(
    http: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
    max_retries: int = 2,
) -> Any:
    """
    POST a JSON body and return the decoded JSON response.

    Transport failures (connect errors, read timeouts) are retried with
    exponential backoff up to ``max_retries`` attempts.

    Raises:
        QuotaExceeded: Provider reported quota/rate limiting.
        UpstreamError: Any other failure, including exhausted retries and
            non-JSON bodies.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=MIN_RETRY_WAIT, max=MAX_RETRY_WAIT),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                response = await http.post(
                    url, json=payload, headers=headers, params=params
                )
    except httpx.TransportError as e:
        logger.error("upstream_transport_error", provider=provider, error=str(e))
        raise UpstreamError(f"{provider} request failed: {e}") from e

    raise_for_upstream_status(response, provider, response.text)

    try:
        return response.json()
    except ValueError as e:
        raise UpstreamError(f"{provider} returned a non-JSON body") from e


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield each ``data:`` payload of an SSE response until ``[DONE]``."""
    async for line in response.aiter_lines():
        stripped = line.strip()
        if not stripped.startswith(SSE_DATA_PREFIX):
            continue
        data = stripped[len(SSE_DATA_PREFIX) :].strip()
        if data == SSE_DONE:
            return
        if data:
            yield data


__all__ = [
    "post_json",
    "raise_for_upstream_status",
    "iter_sse_data",
]
