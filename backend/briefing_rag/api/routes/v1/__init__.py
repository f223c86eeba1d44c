"""
Versioned API routes (v1).

Endpoints:
    - POST /chat: Grounded chat streamed as server-sent events
    - GET /search: Hybrid article search, paginated
    - GET /models: Chat model catalog

Usage:
    from briefing_rag.api.routes.v1 import router as v1_router

    app.include_router(v1_router, prefix="/api/v1")

Note:
    The /api/v1 prefix is NOT included in this router - it is applied
    when including the router in main.py.
"""

from __future__ import annotations

from fastapi import APIRouter

from briefing_rag.api.routes.v1 import chat, models, search

# No prefix here - prefix="/api/v1" is applied in main.py
router = APIRouter(tags=["v1"])

router.include_router(chat.router)
router.include_router(search.router)
router.include_router(models.router)

__all__ = ["router"]
