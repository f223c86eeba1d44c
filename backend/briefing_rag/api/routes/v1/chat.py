"""
Chat endpoint with server-sent events streaming.

POST /api/v1/chat runs retrieval, grounding and re-ranking before the
response starts. Failures at that point are returned as a JSON error with
the pipeline status code (400, 429, 500). Once streaming has begun the
response is always 200 and failures arrive as a terminal ``error`` event.

Event sequence:
    data: {"type": "metadata", "articles": [{"index": 1, "id": ..., ...}]}
    data: {"type": "text", "content": "..."}            (repeated)
    data: {"type": "complete", "stats": {"retrieved": 8, "cited": 3}}
      or
    data: {"type": "error", "detail": "...", "status_code": 429, "error_type": "QuotaExceeded"}

A client disconnect cancels the generator, which closes the upstream
provider response.
"""

from __future__ import annotations

from typing import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from briefing_rag.api.middleware.rate_limit import configured_rate_limit, limiter
from briefing_rag.api.routes.dependencies import get_services
from briefing_rag.rag.orchestrator import ChatRequest, ChatTurn
from briefing_rag.services import Services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _event_stream(turn: ChatTurn) -> AsyncIterator[str]:
    """Serialize turn events as SSE frames and always release the upstream."""
    events = turn.events()
    try:
        async for event in events:
            yield event.to_sse()
    finally:
        await events.aclose()
        await turn.aclose()
        logger.info(
            "chat_response_closed",
            request_id=turn.request_id,
            stage=turn.stage.value,
        )


@router.post(
    "",
    summary="Grounded chat (v1)",
    description=(
        "Answers the last user message from the retrieved briefing articles "
        "and streams the response as server-sent events."
    ),
    response_class=StreamingResponse,
)
@limiter.limit(configured_rate_limit)
async def post_chat(
    request: Request,
    body: ChatRequest,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Prepare the turn, then stream its events."""
    request_id = getattr(request.state, "request_id", None)
    turn = await services.orchestrator.prepare(body, request_id=request_id)
    return StreamingResponse(
        _event_stream(turn),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


__all__ = ["router"]
