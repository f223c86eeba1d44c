"""
Intent router: decide whether a turn needs local retrieval.

Intents:
    DIRECT      small talk, coding or logic questions, questions about the
                assistant itself; no retrieval, no web search
    RAG_LOCAL   questions about articles in the local feed database
    SEARCH_WEB  real-time facts the feed cannot contain; web search forced on

The router is off by default; when disabled every turn is RAG_LOCAL. It
never fails a request: any classification problem yields RAG_LOCAL.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import structlog

from briefing_rag.config.settings import Settings
from briefing_rag.errors import BriefingRAGError
from briefing_rag.llm.gateway import LLMGateway
from briefing_rag.llm.models import ModelSelector
from briefing_rag.llm.text import parse_json_payload

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

SHORT_QUERY_CHARS = 5
HISTORY_TURNS = 4

ROUTER_PROMPT_TEMPLATE = """You are the high-speed traffic router of an AI assistant.
Your only task is to classify the user query into one of three intents.

### Intents
1. "DIRECT": small talk, greetings, logic puzzles, coding questions, creative writing, or \
questions about you (the AI) yourself.
   - Examples: "hello", "write a python script", "what is 1+1?", "are you GPT-4?"
2. "RAG_LOCAL": the user asks about content in the local RSS feeds / database, including \
questions about "articles", "news", "summaries" or specific technology topics.
   - Example: "summarize the latest AI news" -> Intent: RAG_LOCAL, Modified: "latest AI news summary"
   - Example: "what is new with DeepSeek?" -> Intent: RAG_LOCAL, Modified: "DeepSeek news"
3. "SEARCH_WEB": the user asks for real-time external information the feed cannot contain, \
or explicitly asks for a web search.
   - Examples: "NVIDIA stock price right now", "weather in Tokyo today".

### Output format (strict JSON)
{{
  "intent": "DIRECT" | "RAG_LOCAL" | "SEARCH_WEB",
  "reasoning": "short explanation (< 10 words)",
  "modifiedQuery": "query optimized for vector search, in the same language as the user \
query, proper nouns untranslated"
}}

### User query
{query}

### Recent conversation (context)
{history}
"""


class RouterIntent(str, Enum):
    DIRECT = "DIRECT"
    RAG_LOCAL = "RAG_LOCAL"
    SEARCH_WEB = "SEARCH_WEB"


@dataclass(frozen=True)
class RouterResult:
    intent: RouterIntent
    reasoning: str = ""
    modified_query: str | None = None


class IntentRouter:
    """LLM-backed turn classifier."""

    def __init__(self, gateway: LLMGateway, settings: Settings) -> None:
        self._gateway = gateway
        self._enabled = settings.enable_intent_router
        self._selector = ModelSelector(model_id=settings.router_model_id)
        self._timeout = settings.retrieval_timeout_seconds
        self._log = logger.bind(component="intent_router", enabled=self._enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _build_prompt(self, query: str, history: Sequence[dict[str, str]]) -> str:
        previous = list(history[:-1])[-HISTORY_TURNS:] if len(history) > 1 else []
        history_text = (
            "\n".join(f"{m['role'].upper()}: {m['content']}" for m in previous)
            if previous
            else "None"
        )
        return ROUTER_PROMPT_TEMPLATE.format(query=query, history=history_text)

    async def classify(
        self,
        query: str,
        history: Sequence[dict[str, str]] = (),
    ) -> RouterResult:
        """
        Classify the current turn.

        Args:
            query: Current user message.
            history: Full conversation, current message last.

        Returns:
            RouterResult. RAG_LOCAL whenever the router is disabled or the
            classification fails.
        """
        if not self._enabled:
            return RouterResult(RouterIntent.RAG_LOCAL, "router disabled")

        clean_query = query.strip()
        if len(clean_query) < SHORT_QUERY_CHARS:
            self._log.debug("router_fast_path", intent=RouterIntent.DIRECT.value)
            return RouterResult(RouterIntent.DIRECT, "short query")

        messages = [
            {"role": "system", "content": self._build_prompt(clean_query, history)},
            {"role": "user", "content": clean_query},
        ]
        try:
            async with asyncio.timeout(self._timeout):
                text = await self._gateway.complete(messages, self._selector, json_mode=True)
            payload = parse_json_payload(text, accept=lambda value: isinstance(value, dict))
            intent = RouterIntent(payload.get("intent"))
        except (BriefingRAGError, TimeoutError, ValueError) as e:
            self._log.warning("router_fallback", fallback=RouterIntent.RAG_LOCAL.value, error=str(e))
            return RouterResult(RouterIntent.RAG_LOCAL, "fallback on error")

        modified = payload.get("modifiedQuery")
        result = RouterResult(
            intent=intent,
            reasoning=str(payload.get("reasoning") or ""),
            modified_query=modified.strip() if isinstance(modified, str) and modified.strip() else None,
        )
        self._log.info("router_classified", intent=intent.value, reasoning=result.reasoning)
        return result


__all__ = ["IntentRouter", "RouterIntent", "RouterResult"]
