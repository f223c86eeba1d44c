"""Shared fixtures and fakes for the briefing RAG test suite."""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import Any, AsyncIterator

import pytest

from briefing_rag.config.settings import Settings
from briefing_rag.errors import EmbeddingUnavailable
from briefing_rag.llm.models import ModelSelector
from briefing_rag.retrieval.store import ArticleRecord

QUERY_VECTOR = [1.0, 0.0]


def vector_with_similarity(similarity: float) -> list[float]:
    """2-d unit vector whose cosine similarity to QUERY_VECTOR is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity))]


def make_record(
    article_id: str,
    title: str,
    similarity: float | None = None,
    **fields: Any,
) -> ArticleRecord:
    embedding = vector_with_similarity(similarity) if similarity is not None else None
    return ArticleRecord(id=article_id, title=title, embedding=embedding, **fields)


class FakeEmbedder:
    """Stands in for QueryEmbedder; returns QUERY_VECTOR or fails."""

    def __init__(self, fail_with: str | None = None) -> None:
        self.fail_with = fail_with
        self.calls: list[tuple[str, str | None]] = []

    async def embed(self, text: str, intent: Any = None, routing_tag: str | None = None) -> list[float]:
        self.calls.append((text, routing_tag))
        if self.fail_with:
            raise EmbeddingUnavailable(self.fail_with)
        return list(QUERY_VECTOR)


class FakeGateway:
    """
    Scripted LLMGateway.

    ``completions`` are returned (or raised, for exceptions) in order by
    complete(). stream_chat() yields ``stream_chunks`` then raises
    ``stream_error`` if set.
    """

    def __init__(
        self,
        completions: list[Any] | None = None,
        stream_chunks: list[str] | None = None,
        stream_error: Exception | None = None,
    ) -> None:
        self.completions = list(completions or [])
        self.stream_chunks = list(stream_chunks or [])
        self.stream_error = stream_error
        self.complete_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.stream_closed = False
        self.pool_aliases = ["alok"]

    async def complete(
        self,
        messages: list[dict[str, str]],
        selector: ModelSelector,
        *,
        json_mode: bool = False,
    ) -> str:
        self.complete_calls.append(
            {"messages": messages, "selector": selector, "json_mode": json_mode}
        )
        if not self.completions:
            raise AssertionError("unexpected complete() call")
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def stream_chat(
        self,
        messages: list[dict[str, str]],
        selector: ModelSelector,
        *,
        use_search: bool = False,
    ) -> AsyncIterator[str]:
        self.stream_calls.append(
            {"messages": messages, "selector": selector, "use_search": use_search}
        )
        return self._stream()

    async def _stream(self) -> AsyncIterator[str]:
        try:
            for chunk in self.stream_chunks:
                yield chunk
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory fixture for isolated settings (no .env file)."""

    def _factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "environment": "local",
            "debug": True,
            "gemini_api_key": "test-gemini-key",
            "siliconflow_api_key": "test-sf-key",
            "retrieval_timeout_seconds": 0.5,
            "max_retries": 2,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()
