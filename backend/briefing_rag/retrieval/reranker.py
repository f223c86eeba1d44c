"""
LLM relevance re-ranking of retrieved candidates.

When retrieval returns more candidates than the grounding context can hold,
one LLM call picks the subset most relevant to the query, dropping
near-duplicate stories and preferring recent ones.

Pipeline Position:
    Hybrid Retrieval → Noise Floor → **Re-ranker** → Grounding Prompt → LLM
                                          ↑
                                    This module

Failure handling:
    The re-ranker never fails a request. Call errors, timeouts and
    unparseable output all fall back to the first ``limit`` candidates in
    retrieval order. A quota error on the primary model is retried once
    with the fallback model first.

Usage:
    from briefing_rag.retrieval.reranker import LLMReranker

    reranker = LLMReranker(gateway=gateway, settings=settings)
    outcome = await reranker.narrow(candidates, "OpenAI", selector, limit=10)
    context = outcome.kept
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from briefing_rag.config.settings import Settings
from briefing_rag.errors import BriefingRAGError, QuotaExceeded, RerankFailure
from briefing_rag.llm.gateway import LLMGateway
from briefing_rag.llm.models import ModelSelector
from briefing_rag.llm.text import iter_json_values, parse_json_payload, strip_reasoning
from briefing_rag.schemas import Candidate

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_PROMPT_KEYWORDS = 5
MAX_SUMMARY_CHARS = 400

RERANK_PROMPT_TEMPLATE = """You are a professional news analyst. For the user question "{query}", \
select the most relevant, most valuable and most timely articles from the {count} articles below \
(return at most {limit}).
Requirements:
1. Respond strictly in JSON: {{"selected_ids": ["id1", "id2", ...]}}.
2. If several articles cover the same story, keep only the best or most recent one.
3. Prefer articles with a more recent Date.

Candidate articles:
{article_list}"""


@dataclass
class RerankOutcome:
    """Result of a narrowing pass."""

    kept: list[Candidate]
    reranked: bool
    fallback_reason: str | None = None


def build_rerank_prompt(candidates: list[Candidate], query: str, limit: int) -> str:
    """Render the selection prompt for ``candidates``."""
    blocks = []
    for candidate in candidates:
        published = candidate.published.isoformat() if candidate.published else "N/A"
        keywords = ", ".join(candidate.keywords[:MAX_PROMPT_KEYWORDS])
        summary = (candidate.summary or "N/A")[:MAX_SUMMARY_CHARS]
        blocks.append(
            f"ID: {candidate.id} | Date: {published} | Source: {candidate.source_name or 'Unknown'}\n"
            f"Title: {candidate.title}\n"
            f"Category: {candidate.category or 'N/A'} | Keywords: [{keywords}]\n"
            f"Summary: {summary}"
        )
    return RERANK_PROMPT_TEMPLATE.format(
        query=query,
        count=len(candidates),
        limit=limit,
        article_list="\n---\n".join(blocks),
    )


def _has_selected_ids(value: object) -> bool:
    return isinstance(value, dict) and isinstance(value.get("selected_ids"), list)


def parse_selected_ids(text: str) -> list[str]:
    """
    Extract selected ids from a re-rank response.

    Accepts ``{"selected_ids": [...]}`` or a bare JSON array. An object with a
    ``selected_ids`` list wins over any array that appears earlier in the
    text, such as bracketed reasoning. Ids are coerced to strings and
    duplicates removed, keeping first occurrence.

    Raises:
        RerankFailure: The response holds no usable id list.
    """
    try:
        payload = parse_json_payload(text, accept=_has_selected_ids)["selected_ids"]
    except ValueError:
        payload = None

    if payload is None:
        # A bare array only counts when the model wrote no object at all
        if any(isinstance(value, dict) for value in iter_json_values(strip_reasoning(text or ""))):
            raise RerankFailure("Re-rank response has no selected_ids list")
        try:
            payload = parse_json_payload(text, accept=lambda value: isinstance(value, list))
        except ValueError as e:
            raise RerankFailure(f"Unparseable re-rank response: {e}") from e

    seen: set[str] = set()
    ids: list[str] = []
    for item in payload:
        if item is None or isinstance(item, (dict, list)):
            continue
        value = str(item).strip()
        if value and value not in seen:
            seen.add(value)
            ids.append(value)
    return ids


class LLMReranker:
    """Narrows a ranked candidate list with one LLM selection call."""

    def __init__(self, gateway: LLMGateway, settings: Settings) -> None:
        self._gateway = gateway
        self._trigger_size = settings.rerank_trigger_size
        self._default_limit = settings.context_size
        self._model_id = settings.rerank_model_id
        self._fallback_model_id = settings.rerank_fallback_model_id
        self._timeout = settings.retrieval_timeout_seconds
        self._log = logger.bind(component="reranker")

    async def _select(self, prompt: str, selector: ModelSelector) -> list[str]:
        async with asyncio.timeout(self._timeout):
            text = await self._gateway.complete(
                [{"role": "user", "content": prompt}], selector, json_mode=True
            )
        return parse_selected_ids(text)

    async def _select_with_quota_fallback(
        self, prompt: str, selector: ModelSelector
    ) -> list[str]:
        try:
            return await self._select(prompt, selector)
        except QuotaExceeded:
            if selector.model_id == self._fallback_model_id:
                raise
            self._log.warning(
                "rerank_model_fallback",
                model=selector.model_id,
                fallback_model=self._fallback_model_id,
            )
            return await self._select(prompt, selector.with_model(self._fallback_model_id))

    async def narrow(
        self,
        candidates: list[Candidate],
        query: str,
        model: ModelSelector | None = None,
        limit: int | None = None,
    ) -> RerankOutcome:
        """
        Keep at most ``limit`` candidates most relevant to ``query``.

        Args:
            candidates: Ranked candidates from retrieval.
            query: User question.
            model: Selector of the chat turn. Only its quota pool is used;
                the re-rank model comes from configuration.
            limit: Maximum candidates to keep. Defaults to ``context_size``.

        Returns:
            RerankOutcome. Never raises.
        """
        limit = limit or self._default_limit
        trigger = max(self._trigger_size, limit)

        if len(candidates) <= trigger:
            return RerankOutcome(kept=candidates, reranked=False)

        pool = model.pool if model else None
        selector = ModelSelector(model_id=self._model_id, pool=pool)
        log = self._log.bind(candidates=len(candidates), limit=limit, model=self._model_id)

        fallback_reason: str | None = None
        try:
            selected = await self._select_with_quota_fallback(
                build_rerank_prompt(candidates, query, limit), selector
            )
        except TimeoutError:
            fallback_reason = "timeout"
        except BriefingRAGError as e:
            fallback_reason = e.kind
        else:
            wanted = set(selected)
            kept = [c for c in candidates if c.id in wanted][:limit]
            if kept:
                log.info("rerank_complete", selected=len(selected), kept=len(kept))
                return RerankOutcome(kept=kept, reranked=True)
            fallback_reason = "empty_selection"

        log.warning(
            "rerank_fallback",
            operation="rerank",
            fallback="positional",
            reason=fallback_reason,
        )
        return RerankOutcome(
            kept=candidates[:limit], reranked=False, fallback_reason=fallback_reason
        )


__all__ = [
    "LLMReranker",
    "RerankOutcome",
    "build_rerank_prompt",
    "parse_selected_ids",
]
