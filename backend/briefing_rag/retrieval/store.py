"""
Article store adapters.

The retriever depends only on the ArticleStore protocol:

    hybrid_search(query_text, query_embedding | None, match_count) -> list[Candidate]
    get_config_value(key) -> str | None

Two implementations:
- SupabaseArticleStore: calls the ``hybrid_search_articles`` Postgres
  function through PostgREST, which qualifies and tiers rows server-side.
- InMemoryArticleStore: evaluates the same ranking policy in Python. Used
  for local development without a database and in tests.

Any store failure raises RetrievalBackendError. There is no fallback: a
broken store must be visible, not answered with an empty context.
"""

from __future__ import annotations

from typing import Any, Iterable, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import ValidationError

from briefing_rag.errors import RetrievalBackendError
from briefing_rag.retrieval.ranking import (
    RankingPolicy,
    classify_tier,
    cosine_similarity,
    keyword_match,
    rank_candidates,
)
from briefing_rag.schemas import Candidate

logger = structlog.get_logger(__name__)


@runtime_checkable
class ArticleStore(Protocol):
    """Read-only view of the article corpus used by retrieval."""

    async def hybrid_search(
        self,
        query_text: str,
        query_embedding: list[float] | None,
        match_count: int,
    ) -> list[Candidate]: ...

    async def get_config_value(self, key: str) -> str | None: ...


class ArticleRecord(Candidate):
    """A stored article together with its document embedding."""

    embedding: list[float] | None = None

    def to_candidate(self, similarity: float, match_priority: int) -> Candidate:
        data = self.model_dump(exclude={"embedding", "similarity", "match_priority"})
        return Candidate(**data, similarity=similarity, match_priority=match_priority)


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryArticleStore:
    """
    Article store evaluated in process.

    Example:
        store = InMemoryArticleStore(
            [ArticleRecord(id="1", title="OpenAI launches GPT-5", embedding=[...])],
            config={"gemini_chat_prompt": "You are..."},
        )
    """

    def __init__(
        self,
        records: Iterable[ArticleRecord] = (),
        policy: RankingPolicy | None = None,
        config: dict[str, str] | None = None,
    ) -> None:
        self._records = list(records)
        self._policy = policy or RankingPolicy()
        self._config = dict(config or {})

    def add(self, record: ArticleRecord) -> None:
        self._records.append(record)

    async def hybrid_search(
        self,
        query_text: str,
        query_embedding: list[float] | None,
        match_count: int,
    ) -> list[Candidate]:
        has_embedding = query_embedding is not None
        matches: list[Candidate] = []
        for record in self._records:
            similarity = 0.0
            if has_embedding and record.embedding:
                similarity = cosine_similarity(query_embedding, record.embedding)
            tier = classify_tier(
                keyword_match(query_text, record.title, record.category, record.keywords),
                similarity,
                has_embedding,
                self._policy,
            )
            if tier is not None:
                matches.append(record.to_candidate(similarity, tier))
        return rank_candidates(matches)[:match_count]

    async def get_config_value(self, key: str) -> str | None:
        return self._config.get(key)


# =============================================================================
# Supabase store
# =============================================================================


class SupabaseArticleStore:
    """
    PostgREST client for the Supabase-hosted article table.

    Attributes:
        rpc_name: Name of the hybrid search function.
        config_table: Key/value table holding runtime configuration.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        service_key: str,
        rpc_name: str = "hybrid_search_articles",
        config_table: str = "app_config",
    ) -> None:
        self._http = http
        self._rest_url = f"{str(url).rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
        }
        self.rpc_name = rpc_name
        self.config_table = config_table
        self._log = logger.bind(component="supabase_store")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(
                method, f"{self._rest_url}/{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            self._log.error("store_request_failed", path=path, error=str(e))
            raise RetrievalBackendError(f"Article store request failed: {e}") from e

        if not response.is_success:
            self._log.error(
                "store_http_error",
                path=path,
                status_code=response.status_code,
                body=response.text[:300],
            )
            raise RetrievalBackendError(
                f"Article store returned {response.status_code}: {response.text[:300]}",
                details={"status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise RetrievalBackendError("Article store returned a non-JSON body") from e

    async def hybrid_search(
        self,
        query_text: str,
        query_embedding: list[float] | None,
        match_count: int,
    ) -> list[Candidate]:
        """
        Run the hybrid search RPC.

        Rows are re-sorted client-side with the same stable key so ordering
        does not depend on the database honouring ORDER BY through PostgREST.

        Raises:
            RetrievalBackendError: Network failure, non-2xx status or rows
                that do not validate as candidates.
        """
        rows = await self._request(
            "POST",
            f"rpc/{self.rpc_name}",
            json={
                "query_text": query_text,
                "query_embedding": query_embedding,
                "match_count": match_count,
            },
        )
        if not isinstance(rows, list):
            raise RetrievalBackendError("Hybrid search RPC did not return a list of rows")

        try:
            candidates = [Candidate.model_validate(row) for row in rows]
        except ValidationError as e:
            raise RetrievalBackendError(f"Malformed hybrid search row: {e}") from e

        self._log.debug(
            "store_hybrid_search",
            rows=len(candidates),
            with_embedding=query_embedding is not None,
        )
        return rank_candidates(candidates)[:match_count]

    async def get_config_value(self, key: str) -> str | None:
        """Read one value from the config table, or None if the key is absent."""
        rows = await self._request(
            "GET",
            self.config_table,
            params={"key": f"eq.{key}", "select": "value", "limit": "1"},
        )
        if not rows:
            return None
        value = rows[0].get("value") if isinstance(rows[0], dict) else None
        return value if isinstance(value, str) else None


__all__ = [
    "ArticleStore",
    "ArticleRecord",
    "InMemoryArticleStore",
    "SupabaseArticleStore",
]
