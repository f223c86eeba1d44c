"""FastAPI dependencies shared by the v1 routes."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from briefing_rag.services import Services


def get_services(request: Request) -> Services:
    """
    Return the pipeline built by the application lifespan.

    Raises:
        HTTPException: 503 when the lifespan has not run (or already shut down).
    """
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up. Please retry shortly.",
        )
    return services


__all__ = ["get_services"]
