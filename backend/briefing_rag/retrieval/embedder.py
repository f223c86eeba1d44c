"""
Query embedder for hybrid retrieval.

Turns a query (or, for indexing, a document) into a fixed-dimension vector
with Gemini ``gemini-embedding-001``. Retrieval treats the embedder as
optional: every failure is raised as EmbeddingUnavailable so the retriever
can drop to keyword-only matching instead of failing the request.

Quota routing:
    Each caller passes a routing tag. The tag maps to a quota pool alias
    through ``settings.embedding_routes`` so the AI assistant and the plain
    search box draw on different keys:

        "ai"     → cheng30 pool (falls back to default when unset)
        "search" → default pool

Usage:
    from briefing_rag.retrieval.embedder import EmbeddingIntent, QueryEmbedder

    embedder = QueryEmbedder(gemini=client, pools=registry, settings=settings)
    vector = await embedder.embed("OpenAI", EmbeddingIntent.QUERY, routing_tag="ai")
"""

from __future__ import annotations

import asyncio
from enum import Enum

import structlog

from briefing_rag.config.settings import Settings
from briefing_rag.errors import BriefingRAGError, EmbeddingUnavailable
from briefing_rag.llm.gemini import GeminiClient
from briefing_rag.llm.models import QuotaPoolRegistry

logger = structlog.get_logger(__name__)


class EmbeddingIntent(str, Enum):
    """Task type sent with the embedding request."""

    QUERY = "RETRIEVAL_QUERY"
    DOCUMENT = "RETRIEVAL_DOCUMENT"


class QueryEmbedder:
    """
    Gemini-backed text embedder.

    Stateless apart from injected collaborators; no results are cached.

    Attributes:
        model_id: Embedding model id.
        dimension: Expected vector length.
    """

    def __init__(
        self,
        gemini: GeminiClient,
        pools: QuotaPoolRegistry,
        settings: Settings,
    ) -> None:
        self._gemini = gemini
        self._pools = pools
        self._routes = {tag.lower(): alias for tag, alias in settings.embedding_routes.items()}
        self._max_chars = settings.embedding_max_chars
        self._timeout = settings.retrieval_timeout_seconds
        self.model_id = settings.embedding_model_id
        self.dimension = settings.embedding_dimension
        self._log = logger.bind(component="query_embedder", model_id=self.model_id)

    def _normalize_text(self, text: str) -> str:
        """
        Collapse whitespace and truncate to the configured limit.

        Raises:
            EmbeddingUnavailable: If nothing is left to embed.
        """
        normalized = " ".join((text or "").split())
        if not normalized:
            raise EmbeddingUnavailable("Cannot embed empty text")

        if len(normalized) > self._max_chars:
            self._log.warning(
                "text_truncated",
                original_length=len(normalized),
                truncated_length=self._max_chars,
            )
            normalized = normalized[: self._max_chars]
        return normalized

    def pool_for(self, routing_tag: str | None) -> str | None:
        """Quota pool alias for a routing tag (None means default)."""
        if not routing_tag:
            return None
        return self._routes.get(routing_tag.lower())

    async def embed(
        self,
        text: str,
        intent: EmbeddingIntent = EmbeddingIntent.QUERY,
        routing_tag: str | None = None,
    ) -> list[float]:
        """
        Embed ``text`` for retrieval.

        Args:
            text: Query or document text.
            intent: QUERY for search input, DOCUMENT when indexing articles.
            routing_tag: Selects the quota pool (e.g. "ai", "search").

        Returns:
            Vector of ``self.dimension`` floats.

        Raises:
            EmbeddingUnavailable: Missing key, quota, network failure,
                timeout or a malformed response.
        """
        normalized = self._normalize_text(text)
        pool = self.pool_for(routing_tag)
        log = self._log.bind(intent=intent.value, routing_tag=routing_tag, pool=pool)

        try:
            credential = self._pools.resolve(pool)
            async with asyncio.timeout(self._timeout):
                vector = await self._gemini.embed_content(
                    normalized,
                    model=self.model_id,
                    task_type=intent.value,
                    api_key=credential.key,
                    dimension=self.dimension,
                )
        except TimeoutError as e:
            log.warning("embedding_timeout", timeout_seconds=self._timeout)
            raise EmbeddingUnavailable(
                f"Embedding timed out after {self._timeout}s"
            ) from e
        except BriefingRAGError as e:
            log.warning("embedding_failed", error_type=e.kind, error=e.message)
            raise EmbeddingUnavailable(f"Embedding failed: {e.message}") from e

        if len(vector) != self.dimension:
            log.warning(
                "embedding_dimension_mismatch",
                expected=self.dimension,
                actual=len(vector),
            )
            raise EmbeddingUnavailable(
                f"Embedding has {len(vector)} dimensions, expected {self.dimension}"
            )

        log.debug("embedding_generated", dimension=len(vector), text_length=len(normalized))
        return vector


__all__ = ["EmbeddingIntent", "QueryEmbedder"]
