"""
API routes package.

Package Structure:
    - health.py: Health check with dependency status
    - dependencies.py: Shared FastAPI dependencies
    - v1/: Version 1 API endpoints (chat, search, models)

Usage:
    from briefing_rag.api.routes import health_router, v1_router

    app.include_router(health_router)
    app.include_router(v1_router, prefix="/api/v1")
"""

from __future__ import annotations

from briefing_rag.api.routes.health import router as health_router
from briefing_rag.api.routes.v1 import router as v1_router

__all__ = [
    "health_router",
    "v1_router",
]
