"""
AI search endpoint.

GET /api/v1/search?query=...&page=N runs the hybrid retriever with the
"search" routing tag and returns one page of tier-ranked articles. When the
query could not be embedded the results are keyword-only and the response
says so through ``is_fallback`` and ``error_snippet``.

Example Response:
    {
        "articles": [{"id": "42", "title": "...", "match_priority": 1, ...}],
        "is_fallback": false,
        "error_snippet": null,
        "page": 1,
        "page_size": 20,
        "total": 37
    }
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from briefing_rag.api.middleware.rate_limit import configured_rate_limit, limiter
from briefing_rag.api.routes.dependencies import get_services
from briefing_rag.errors import InvalidRequest
from briefing_rag.schemas import Candidate
from briefing_rag.services import Services

logger = structlog.get_logger(__name__)

# Quota routing tag used for search-box embeddings
SEARCH_ROUTING_TAG = "search"

router = APIRouter(prefix="/search", tags=["Search"])


class SearchResponse(BaseModel):
    """One page of hybrid search results."""

    articles: list[Candidate] = Field(default_factory=list)
    is_fallback: bool = Field(
        default=False,
        description="True when the query could not be embedded and only keyword matches are returned.",
    )
    error_snippet: str | None = Field(
        default=None,
        description="Why the search fell back to keywords.",
    )
    page: int
    page_size: int
    total: int


def fallback_snippet(embedding_error: str | None) -> str:
    """Message shown to the user when the search ran keyword-only."""
    reason = embedding_error or "unknown error"
    return f"Vector generation failed ({reason}), switched to keyword search."


@router.get(
    "",
    response_model=SearchResponse,
    summary="Hybrid article search (v1)",
    description="Keyword and vector search over the briefing archive, tier ranked.",
)
@limiter.limit(configured_rate_limit)
async def search_articles(
    request: Request,
    query: str = Query(..., description="Search text"),
    page: int = Query(default=1, ge=1, description="1-based page number"),
    services: Services = Depends(get_services),
) -> SearchResponse:
    """Return one page of ranked candidates for ``query``."""
    query_text = query.strip()
    if not query_text:
        raise InvalidRequest("Query parameter 'query' is required")

    settings = services.settings
    outcome = await services.retriever.search(
        query_text,
        match_count=settings.search_match_count,
        routing_tag=SEARCH_ROUTING_TAG,
    )

    page_size = settings.search_page_size
    start = (page - 1) * page_size
    articles = outcome.candidates[start : start + page_size]

    logger.info(
        "search_complete",
        page=page,
        returned=len(articles),
        total=len(outcome.candidates),
        degraded=outcome.degraded,
    )

    return SearchResponse(
        articles=articles,
        is_fallback=outcome.degraded,
        error_snippet=fallback_snippet(outcome.embedding_error) if outcome.degraded else None,
        page=page,
        page_size=page_size,
        total=len(outcome.candidates),
    )


__all__ = ["router", "SearchResponse", "fallback_snippet", "SEARCH_ROUTING_TAG"]
