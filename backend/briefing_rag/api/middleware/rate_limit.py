"""
Rate limiting for the chat and search endpoints using slowapi.

Limits are per client IP. The per-minute allowance comes from
``settings.rate_limit_per_minute`` and is read on each request, so tests
and deployments can change it through the environment.

Usage:
    from briefing_rag.api.middleware.rate_limit import (
        configured_rate_limit,
        limiter,
        rate_limit_exceeded_handler,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @router.post("")
    @limiter.limit(configured_rate_limit)
    async def post_chat(request: Request, ...):
        ...
"""

from __future__ import annotations

import structlog
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from briefing_rag.config.settings import get_settings

logger = structlog.get_logger(__name__)

# =============================================================================
# Rate Limiter Configuration
# =============================================================================

DEFAULT_RATE_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address)


def get_rate_limit_string(requests_per_minute: int | None = None) -> str:
    """
    Build a slowapi rate limit string ("N/minute").

    Returns DEFAULT_RATE_LIMIT when no value is given.
    """
    if requests_per_minute is None:
        return DEFAULT_RATE_LIMIT
    return f"{requests_per_minute}/minute"


def configured_rate_limit() -> str:
    """Rate limit from the current settings."""
    return get_rate_limit_string(get_settings().rate_limit_per_minute)


# =============================================================================
# Exception Handler
# =============================================================================


def _retry_after_seconds(limit_detail: str) -> str:
    lowered = limit_detail.lower()
    if "hour" in lowered:
        return "3600"
    if "second" in lowered:
        parts = limit_detail.split()
        if parts and parts[0].isdigit():
            return parts[0]
    return "60"


async def rate_limit_exceeded_handler(
    request: Request,
    exc: RateLimitExceeded,
) -> JSONResponse:
    """
    Return a 429 with the standard error body and a Retry-After header.

    Example Response:
        HTTP/1.1 429 Too Many Requests
        Retry-After: 60

        {
            "detail": "Rate limit exceeded. Please wait before making more requests.",
            "status_code": 429,
            "error_type": "rate_limit",
            "retry_after": "10 per 1 minute"
        }
    """
    limit_detail = str(exc.detail) if exc.detail else "60"
    client_ip = get_remote_address(request) or "unknown"
    logger.warning(
        "rate_limit_exceeded",
        client_ip=client_ip,
        path=str(request.url.path),
        method=request.method,
        limit_detail=limit_detail,
    )

    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please wait before making more requests.",
            "status_code": 429,
            "error_type": "rate_limit",
            "retry_after": limit_detail,
        },
        headers={"Retry-After": _retry_after_seconds(limit_detail)},
    )


__all__ = [
    "DEFAULT_RATE_LIMIT",
    "RateLimitExceeded",
    "configured_rate_limit",
    "get_rate_limit_string",
    "limiter",
    "rate_limit_exceeded_handler",
]
