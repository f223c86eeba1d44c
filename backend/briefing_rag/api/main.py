"""
FastAPI application factory and configuration.

Creates the FastAPI application for the briefing RAG backend: middleware,
error handling, rate limiting and routes. Pipeline collaborators (provider
clients, article store, orchestrator) are built once in the lifespan and
stored on ``app.state.services``; tests pass their own through
``create_app(services=...)``.

Features:
    - CORS middleware for the reader frontend
    - X-Request-ID on every response, bound into the log context
    - Pipeline errors rendered with their kind and status code
    - IP-based rate limiting on chat and search
    - Health check endpoint (/health)
    - Versioned routes under /api/v1

Usage:
    # Run directly with uvicorn
    uvicorn briefing_rag.api.main:app --reload --host 0.0.0.0 --port 8000

    # Or import and use programmatically
    from briefing_rag.api.main import app, create_app

    # Create a new app instance (useful for testing)
    test_app = create_app(services=fake_services)
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from briefing_rag.api import __api_version__, __version__
from briefing_rag.api.middleware import (
    RateLimitExceeded,
    bind_request_context,
    clear_context,
    configure_logging,
    limiter,
    rate_limit_exceeded_handler,
)
from briefing_rag.api.routes import health_router, v1_router
from briefing_rag.config import Settings, get_settings, validate_config
from briefing_rag.errors import BriefingRAGError, InvalidRequest
from briefing_rag.services import Services, build_services

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = structlog.get_logger(__name__)

API_TITLE = "Briefing RAG API"
REQUEST_ID_HEADER = "X-Request-ID"
INTERNAL_ERROR_DETAIL = "An unexpected error occurred."


# =============================================================================
# Response Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Body of every non-streaming error response."""

    detail: str
    status_code: int
    error_type: str


def _error_response(status_code: int, detail: str, error_type: str) -> JSONResponse:
    body = ErrorResponse(detail=detail, status_code=status_code, error_type=error_type)
    return JSONResponse(status_code=status_code, content=body.model_dump())


# =============================================================================
# Lifespan Context Manager
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Set up logging and the pipeline on startup, release them on shutdown.

    Services passed to create_app() belong to the caller and are left open;
    services built here are closed here.

    Raises:
        ValueError: If configuration validation fails.
    """
    settings: Settings = app.state.settings
    configure_logging(environment=settings.environment, log_level=settings.log_level)

    try:
        validate_config(settings)
    except ValueError as e:
        logger.error("startup_config_invalid", error=str(e))
        raise

    owns_services = app.state.services is None
    if owns_services:
        app.state.services = build_services(settings)

    logger.info(
        "app_started",
        version=__version__,
        api_version=__api_version__,
        environment=settings.environment,
        owns_services=owns_services,
    )

    yield

    if owns_services:
        services: Services = app.state.services
        await services.aclose()
        app.state.services = None
    logger.info("app_stopped")


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        settings: Settings to run with. Defaults to the settings of
            ``services`` when given, else the cached environment settings.
        services: Prebuilt pipeline. When omitted the lifespan builds one
            from ``settings`` and closes it at shutdown.

    Returns:
        FastAPI: Configured FastAPI application instance.

    Example:
        test_app = create_app(settings=Settings(environment="local"), services=fakes)
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    docs_enabled = settings.debug
    application = FastAPI(
        title=API_TITLE,
        description=(
            "Hybrid retrieval-augmented chat over an RSS briefing archive. "
            "Answers stream over server-sent events with numbered citations "
            "into the retrieved articles."
        ),
        version=__version__,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.services = services
    application.state.limiter = limiter

    _configure_request_context(application)
    _configure_cors(application, settings)
    _register_error_handlers(application, settings)
    _register_routes(application)

    return application


# =============================================================================
# Middleware Configuration
# =============================================================================


def _configure_request_context(app: FastAPI) -> None:
    """
    Attach a request id to every request.

    The id comes from the incoming X-Request-ID header when present. It is
    bound into the structlog context, stored on ``request.state`` and echoed
    in the response headers.
    """

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        bind_request_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    """Allow the reader frontend to call the API and read X-Request-ID."""
    origins = settings.get_cors_origins_list()
    logger.info("cors_configured", origins=origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )


# =============================================================================
# Error Handlers
# =============================================================================


def _register_error_handlers(app: FastAPI, settings: Settings) -> None:
    """
    Register global error handlers for the application.

    Every error body has the same shape: ``detail``, ``status_code`` and
    ``error_type``. Pipeline errors use their kind as ``error_type``; FastAPI
    body and query validation failures are reported as InvalidRequest.

    Args:
        app: The FastAPI application instance.
        settings: Settings deciding whether internal error details are shown.
    """
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(BriefingRAGError)
    async def pipeline_error_handler(
        request: Request, exc: BriefingRAGError
    ) -> JSONResponse:
        logger.warning(
            "pipeline_error",
            error_type=exc.kind,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = exc.errors()
        first = problems[0] if problems else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid request")
        error = InvalidRequest(f"{location}: {message}" if location else message)
        logger.warning(
            "request_invalid",
            error=error.message,
            problems=len(problems),
            path=request.url.path,
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "http_error",
            status_code=exc.status_code,
            error=str(exc.detail),
            path=request.url.path,
        )
        return _error_response(exc.status_code, str(exc.detail), "http_error")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("value_error", error=str(exc), path=request.url.path)
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), "validation_error"
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Internal details are only returned in debug mode."""
        logger.exception(
            "unhandled_error",
            error_class=type(exc).__name__,
            path=request.url.path,
        )
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(exc) if settings.debug else INTERNAL_ERROR_DETAIL,
            "internal_error",
        )


# =============================================================================
# Route Registration
# =============================================================================


def _register_routes(app: FastAPI) -> None:
    """
    Register API routes with the application.

    Registers:
        - Health check router (/health)
        - Versioned routes (/api/v1/chat, /api/v1/search, /api/v1/models)
        - Root endpoint (/)
    """
    app.include_router(health_router)
    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/", tags=["Root"], summary="API information")
    async def root(request: Request) -> dict[str, Any]:
        settings: Settings = request.app.state.settings
        return {
            "name": API_TITLE,
            "version": __version__,
            "api_version": __api_version__,
            "environment": settings.environment,
            "docs": "/docs" if settings.debug else None,
            "health": "/health",
        }


# uvicorn briefing_rag.api.main:app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    run_settings = get_settings()
    uvicorn.run(
        "briefing_rag.api.main:app",
        host=run_settings.backend_host,
        port=run_settings.backend_port,
        reload=run_settings.debug,
        log_level=run_settings.log_level.lower(),
    )

