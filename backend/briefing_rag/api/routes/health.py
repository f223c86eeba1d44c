"""
Health check endpoint for API monitoring with dependency checks.

Features:
    - Basic health status (ok, degraded)
    - Environment and version information
    - Dependency checks with graceful degradation:
        - Article store connectivity with latency tracking
        - Gemini and SiliconFlow key configuration
    - Non-blocking checks with a timeout
    - No authentication required

Status Logic:
    - "ok": All checks pass or are skipped
    - "degraded": The article store check failed; chat and search will error

Example Response:
    {
        "status": "ok",
        "environment": "local",
        "version": "0.3.0",
        "api_version": "v1",
        "checks": {
            "article_store": {"status": "ok", "backend": "SupabaseArticleStore", "latency_ms": 42},
            "gemini": {"status": "ok"},
            "siliconflow": {"status": "skipped", "error": "SILICONFLOW_API_KEY not configured"}
        }
    }
"""

from __future__ import annotations

import asyncio
import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from briefing_rag.api import __api_version__, __version__
from briefing_rag.config.settings import Settings
from briefing_rag.errors import BriefingRAGError
from briefing_rag.retrieval.store import InMemoryArticleStore
from briefing_rag.services import Services

# Module logger
logger = structlog.get_logger(__name__)

# Timeout for dependency checks (seconds)
CHECK_TIMEOUT_SECONDS = 5.0


# =============================================================================
# Response Models
# =============================================================================


class DependencyCheckResult(BaseModel):
    """Result of a single dependency check."""

    status: str = Field(
        ...,
        description="Check status: ok, error, or skipped",
        examples=["ok"],
    )
    backend: str | None = Field(
        default=None,
        description="Implementation behind the dependency (article store only)",
    )
    latency_ms: int | None = Field(
        default=None,
        description="Latency in milliseconds (article store only)",
        examples=[50],
    )
    error: str | None = Field(
        default=None,
        description="Error message if check failed or was skipped",
        examples=[None],
    )


class DependencyChecks(BaseModel):
    """Container for all dependency check results."""

    article_store: DependencyCheckResult
    gemini: DependencyCheckResult
    siliconflow: DependencyCheckResult


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Overall health status: ok or degraded")
    environment: str = Field(..., description="Runtime environment (local or production)")
    version: str = Field(..., description="Application version")
    api_version: str = Field(..., description="API version")
    checks: DependencyChecks


# =============================================================================
# Dependency Check Functions
# =============================================================================


async def check_article_store(services: Services | None) -> DependencyCheckResult:
    """
    Check the article store by reading the chat prompt key.

    The in-memory store is reported as "skipped" since it holds no archive.
    """
    if services is None:
        return DependencyCheckResult(status="skipped", error="Services not initialized")

    store = services.store
    backend = type(store).__name__
    if isinstance(store, InMemoryArticleStore):
        return DependencyCheckResult(
            status="skipped",
            backend=backend,
            error="Article store not configured",
        )

    start_time = time.perf_counter()
    try:
        async with asyncio.timeout(CHECK_TIMEOUT_SECONDS):
            await store.get_config_value(services.settings.chat_prompt_key)
    except TimeoutError:
        logger.warning("article_store_check_timeout", timeout_seconds=CHECK_TIMEOUT_SECONDS)
        return DependencyCheckResult(
            status="error",
            backend=backend,
            error=f"Article store check timed out after {CHECK_TIMEOUT_SECONDS}s",
        )
    except BriefingRAGError as exc:
        logger.warning("article_store_check_failed", error=exc.message, error_type=exc.kind)
        return DependencyCheckResult(status="error", backend=backend, error=exc.message)

    return DependencyCheckResult(
        status="ok",
        backend=backend,
        latency_ms=int((time.perf_counter() - start_time) * 1000),
    )


def check_gemini(settings: Settings) -> DependencyCheckResult:
    if settings.gemini_api_key or settings.gemini_api_key_pools:
        return DependencyCheckResult(status="ok")
    return DependencyCheckResult(status="skipped", error="GEMINI_API_KEY not configured")


def check_siliconflow(settings: Settings) -> DependencyCheckResult:
    if settings.siliconflow_api_key:
        return DependencyCheckResult(status="ok")
    return DependencyCheckResult(
        status="skipped", error="SILICONFLOW_API_KEY not configured"
    )


def determine_overall_status(checks: DependencyChecks) -> str:
    """Only the article store is critical to chat and search."""
    if checks.article_store.status == "error":
        return "degraded"
    return "ok"


# =============================================================================
# Router Definition
# =============================================================================

router = APIRouter(
    tags=["Health"],
    responses={
        200: {"description": "API is healthy or degraded"},
    },
)


# =============================================================================
# Endpoints
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API status and dependency health.",
)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint with dependency status.

    Used by load balancers, deployment smoke tests and developers. A failed
    dependency check results in "degraded" status rather than an error
    response.
    """
    settings: Settings = request.app.state.settings
    services: Services | None = getattr(request.app.state, "services", None)

    checks = DependencyChecks(
        article_store=await check_article_store(services),
        gemini=check_gemini(settings),
        siliconflow=check_siliconflow(settings),
    )
    overall_status = determine_overall_status(checks)

    if overall_status != "ok":
        logger.warning("health_check_degraded", checks=checks.model_dump())

    return HealthResponse(
        status=overall_status,
        environment=settings.environment,
        version=__version__,
        api_version=__api_version__,
        checks=checks,
    )


__all__ = ["router", "HealthResponse", "DependencyCheckResult"]
