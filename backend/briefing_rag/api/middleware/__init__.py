"""
Middleware for the FastAPI application.

- logging: structlog configuration and request context binding
- rate_limit: IP-based rate limiting using slowapi
"""

from briefing_rag.api.middleware.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
)
from briefing_rag.api.middleware.rate_limit import (
    DEFAULT_RATE_LIMIT,
    RateLimitExceeded,
    configured_rate_limit,
    get_rate_limit_string,
    limiter,
    rate_limit_exceeded_handler,
)

__all__ = [
    "configure_logging",
    "bind_request_context",
    "clear_context",
    "DEFAULT_RATE_LIMIT",
    "RateLimitExceeded",
    "configured_rate_limit",
    "get_rate_limit_string",
    "limiter",
    "rate_limit_exceeded_handler",
]
