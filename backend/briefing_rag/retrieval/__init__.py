"""Hybrid retrieval: embedding, store access, tier ranking and re-ranking."""

from briefing_rag.retrieval.embedder import EmbeddingIntent, QueryEmbedder
from briefing_rag.retrieval.hybrid_retriever import HybridRetriever, RetrievalOutcome
from briefing_rag.retrieval.reranker import LLMReranker, RerankOutcome
from briefing_rag.retrieval.store import (
    ArticleRecord,
    ArticleStore,
    InMemoryArticleStore,
    SupabaseArticleStore,
)

__all__ = [
    "EmbeddingIntent",
    "QueryEmbedder",
    "HybridRetriever",
    "RetrievalOutcome",
    "LLMReranker",
    "RerankOutcome",
    "ArticleRecord",
    "ArticleStore",
    "InMemoryArticleStore",
    "SupabaseArticleStore",
]
