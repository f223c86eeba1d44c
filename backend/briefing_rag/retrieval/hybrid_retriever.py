"""
Hybrid candidate retrieval (keyword + vector similarity).

Architecture:
    Query → QueryEmbedder ──────────┐
              │ (fails)             ↓
              └→ degraded ──→ ArticleStore.hybrid_search → tier ranking → top N

Graceful Degradation:
    - Embedding: Optional. On EmbeddingUnavailable the store is queried with
      no vector, only keyword matches (tier 1) are returned and every
      similarity is reported as 0.
    - Article store: REQUIRED. RetrievalBackendError propagates unchanged.

Usage:
    from briefing_rag.retrieval.hybrid_retriever import HybridRetriever

    retriever = HybridRetriever(embedder=embedder, store=store, settings=settings)
    outcome = await retriever.search("OpenAI", match_count=50, routing_tag="ai")
    if outcome.degraded:
        ...
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from briefing_rag.config.settings import Settings
from briefing_rag.errors import EmbeddingUnavailable, RetrievalBackendError
from briefing_rag.retrieval.embedder import EmbeddingIntent, QueryEmbedder
from briefing_rag.retrieval.ranking import TIER_KEYWORD, rank_candidates
from briefing_rag.retrieval.store import ArticleStore
from briefing_rag.schemas import Candidate

logger = structlog.get_logger(__name__)


@dataclass
class RetrievalOutcome:
    """Ranked candidates plus how they were obtained."""

    candidates: list[Candidate] = field(default_factory=list)
    degraded: bool = False
    embedding_error: str | None = None


class HybridRetriever:
    """
    Two-signal retriever over an ArticleStore.

    Holds no per-request state, so a single instance serves concurrent
    requests.
    """

    def __init__(
        self,
        embedder: QueryEmbedder,
        store: ArticleStore,
        settings: Settings,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._default_match_count = settings.match_count
        self._timeout = settings.retrieval_timeout_seconds
        self._log = logger.bind(component="hybrid_retriever")

    async def embed_query(
        self,
        query_text: str,
        routing_tag: str | None = None,
    ) -> tuple[list[float] | None, str | None]:
        """
        Embed the query, returning ``(None, reason)`` instead of raising.

        Returns:
            Tuple of the embedding (or None) and the failure message (or None).
        """
        try:
            embedding = await self._embedder.embed(
                query_text, EmbeddingIntent.QUERY, routing_tag=routing_tag
            )
        except EmbeddingUnavailable as e:
            self._log.warning(
                "retrieval_degraded",
                operation="embed",
                fallback="keyword_only",
                error=e.message,
            )
            return None, e.message
        return embedding, None

    async def search_with_embedding(
        self,
        query_text: str,
        embedding: list[float] | None,
        match_count: int | None = None,
        embedding_error: str | None = None,
    ) -> RetrievalOutcome:
        """
        Query the store with an already computed embedding (or None).

        Raises:
            RetrievalBackendError: The store call failed or timed out.
        """
        limit = match_count or self._default_match_count
        log = self._log.bind(query_length=len(query_text), match_count=limit)

        try:
            async with asyncio.timeout(self._timeout):
                rows = await self._store.hybrid_search(query_text, embedding, limit)
        except TimeoutError as e:
            log.error("store_timeout", timeout_seconds=self._timeout)
            raise RetrievalBackendError(
                f"Article store timed out after {self._timeout}s"
            ) from e

        degraded = embedding is None
        if degraded:
            rows = [
                row.model_copy(update={"similarity": 0.0})
                for row in rows
                if row.match_priority == TIER_KEYWORD
            ]

        candidates = rank_candidates(rows)[:limit]

        log.info(
            "retrieval_complete",
            candidates=len(candidates),
            degraded=degraded,
            keyword_matches=sum(1 for c in candidates if c.match_priority == TIER_KEYWORD),
        )
        return RetrievalOutcome(
            candidates=candidates,
            degraded=degraded,
            embedding_error=embedding_error,
        )

    async def search(
        self,
        query_text: str,
        match_count: int | None = None,
        routing_tag: str | None = None,
    ) -> RetrievalOutcome:
        """
        Retrieve and rank candidates for a query.

        Args:
            query_text: Raw user query (used as-is for keyword matching).
            match_count: Maximum candidates to return.
            routing_tag: Quota routing tag passed to the embedder.

        Returns:
            RetrievalOutcome with candidates ordered by tier then similarity.

        Raises:
            RetrievalBackendError: The store call failed or timed out.
        """
        embedding, embedding_error = await self.embed_query(query_text, routing_tag)
        return await self.search_with_embedding(
            query_text, embedding, match_count, embedding_error
        )


__all__ = ["HybridRetriever", "RetrievalOutcome"]
