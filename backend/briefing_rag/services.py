"""
Composition root.

Builds every pipeline collaborator once per process and wires them
together. All provider and store clients share one httpx.AsyncClient, which
is closed by ``Services.aclose()`` at shutdown.

Usage:
    from briefing_rag.services import build_services

    services = build_services(get_settings())
    try:
        async for event in services.orchestrator.ask(request):
            ...
    finally:
        await services.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from briefing_rag.config.settings import Settings
from briefing_rag.llm.gateway import LLMGateway
from briefing_rag.llm.gemini import GeminiClient
from briefing_rag.llm.models import QuotaPoolRegistry
from briefing_rag.llm.siliconflow import SiliconFlowClient
from briefing_rag.rag.orchestrator import ChatOrchestrator
from briefing_rag.rag.router import IntentRouter
from briefing_rag.retrieval.embedder import QueryEmbedder
from briefing_rag.retrieval.hybrid_retriever import HybridRetriever
from briefing_rag.retrieval.ranking import RankingPolicy
from briefing_rag.retrieval.reranker import LLMReranker
from briefing_rag.retrieval.store import (
    ArticleStore,
    InMemoryArticleStore,
    SupabaseArticleStore,
)

logger = structlog.get_logger(__name__)

CONNECT_TIMEOUT_SECONDS = 10.0


@dataclass
class Services:
    """Process-wide pipeline collaborators."""

    settings: Settings
    http: httpx.AsyncClient
    gateway: LLMGateway
    store: ArticleStore
    retriever: HybridRetriever
    reranker: LLMReranker
    router: IntentRouter
    orchestrator: ChatOrchestrator

    async def aclose(self) -> None:
        await self.http.aclose()
        logger.info("services_closed")


def build_store(settings: Settings, http: httpx.AsyncClient) -> ArticleStore:
    """Supabase when configured, otherwise an empty in-memory store."""
    if settings.has_article_store():
        return SupabaseArticleStore(
            http=http,
            url=str(settings.supabase_url),
            service_key=settings.supabase_service_key.get_secret_value(),
            rpc_name=settings.search_rpc_name,
            config_table=settings.config_table,
        )
    logger.warning("article_store_in_memory")
    return InMemoryArticleStore(policy=RankingPolicy.from_settings(settings))


def build_services(
    settings: Settings,
    http: httpx.AsyncClient | None = None,
    store: ArticleStore | None = None,
) -> Services:
    """
    Build the pipeline from settings.

    Args:
        settings: Application settings.
        http: Shared HTTP client. Created when omitted.
        store: Article store override (tests, local fixtures).
    """
    if http is None:
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.upstream_timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS
            ),
        )

    pools = QuotaPoolRegistry(
        default_key=settings.gemini_api_key,
        pools=settings.gemini_api_key_pools,
    )
    gemini = GeminiClient(
        http=http,
        base_url=str(settings.gemini_base_url),
        max_retries=settings.max_retries,
    )
    siliconflow = SiliconFlowClient(
        http=http,
        base_url=str(settings.siliconflow_base_url),
        api_key=(
            settings.siliconflow_api_key.get_secret_value()
            if settings.siliconflow_api_key
            else None
        ),
        max_retries=settings.max_retries,
    )
    gateway = LLMGateway(gemini=gemini, siliconflow=siliconflow, pools=pools)

    if store is None:
        store = build_store(settings, http)
    embedder = QueryEmbedder(gemini=gemini, pools=pools, settings=settings)
    retriever = HybridRetriever(embedder=embedder, store=store, settings=settings)
    reranker = LLMReranker(gateway=gateway, settings=settings)
    router = IntentRouter(gateway=gateway, settings=settings)
    orchestrator = ChatOrchestrator(
        retriever=retriever,
        reranker=reranker,
        gateway=gateway,
        store=store,
        router=router,
        settings=settings,
    )

    logger.info(
        "services_built",
        store=type(store).__name__,
        gemini_pools=pools.aliases,
        intent_router=settings.enable_intent_router,
    )
    return Services(
        settings=settings,
        http=http,
        gateway=gateway,
        store=store,
        retriever=retriever,
        reranker=reranker,
        router=router,
        orchestrator=orchestrator,
    )


__all__ = ["Services", "build_services", "build_store"]
