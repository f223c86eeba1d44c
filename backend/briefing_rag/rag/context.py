"""
Grounding prompt construction.

The chat model receives:
    - a system prompt (from settings, the store's config table, or the
      built-in default), with ``{{COUNT}}`` replaced by the article count
    - the prior conversation turns unchanged
    - a final user turn built from CHAT_CONTEXT_PROMPT_TEMPLATE holding the
      numbered article blocks and the current question

Article blocks are numbered from 1 in context order; the same numbers are
used by the citation list sent to the client, so ``[N]`` in the answer
always resolves to the N-th block.
"""

from __future__ import annotations

from typing import Sequence

import structlog

from briefing_rag.errors import BriefingRAGError
from briefing_rag.retrieval.store import ArticleStore
from briefing_rag.schemas import Candidate

logger = structlog.get_logger(__name__)

# =============================================================================
# Prompts
# =============================================================================

COUNT_PLACEHOLDER = "{{COUNT}}"
ARTICLE_LIST_PLACEHOLDER = "{{ARTICLE_LIST}}"
QUERY_PLACEHOLDER = "{{QUERY}}"

DEFAULT_CHAT_SYSTEM_PROMPT = """You are the chief architect and product lead of a technology \
briefing service. Your style is sharp, engineering-minded and free of PR jargon.
You are given {{COUNT}} local articles retrieved for the user's question. Treat them as the \
primary factual basis of your answer and cite them with [N] markers.
If the local articles do not cover the question, say so before using general knowledge."""

DIRECT_SYSTEM_PROMPT = """You are the chief architect and product lead of a technology \
briefing service. Your style is sharp, engineering-minded and free of PR jargon.
Answer the user directly. Do not use [N] citation markers and do not refer to background articles."""

CHAT_CONTEXT_PROMPT_TEMPLATE = """[Step 1: check local background]
Below are {{COUNT}} local articles retrieved for this question. Use them as the main factual basis \
of your answer.

[Local background articles]
{{ARTICLE_LIST}}

[Current user question]
{{QUERY}}

[Instructions]
1. Citation format (CRITICAL): cite articles only as [N], e.g. [1]. Never use any other format.
"""

NO_ARTICLES_LINE = "(No local articles matched this question.)"
ARTICLE_SEPARATOR = "\n\n---\n\n"
MISSING = "N/A"


def _verdict_text(verdict: dict | None) -> str:
    if not verdict:
        return ""
    return f"Score:{verdict.get('score') or '?'}/10 ({verdict.get('importance') or 'Normal'})"


def format_article_block(article: Candidate, index: int) -> str:
    """Render one numbered article for the grounding prompt."""
    published = article.published.date().isoformat() if article.published else MISSING
    keywords = ", ".join(article.keywords)
    return (
        f"[Article [{index}]]\n"
        f"Title: {article.title}\n"
        f"Source: {article.source_name or 'Unknown'} | {_verdict_text(article.verdict)}\n"
        f"Date: {published}\n"
        f"Category: {article.category or 'Uncategorized'} | Keywords: {keywords}\n"
        f"TLDR: {article.tldr or MISSING}\n"
        f"Summary: {article.summary or MISSING}\n"
        f"Highlights: {article.highlights or MISSING}\n"
        f"Critique: {article.critiques or MISSING}\n"
        f"Market take: {article.market_take or MISSING}"
    )


def format_article_list(articles: Sequence[Candidate]) -> str:
    if not articles:
        return NO_ARTICLES_LINE
    return ARTICLE_SEPARATOR.join(
        format_article_block(article, index)
        for index, article in enumerate(articles, start=1)
    )


def render_system_prompt(template: str, article_count: int) -> str:
    return template.replace(COUNT_PLACEHOLDER, str(article_count))


def render_context_prompt(articles: Sequence[Candidate], query: str) -> str:
    """Final user turn: numbered articles followed by the question."""
    return (
        CHAT_CONTEXT_PROMPT_TEMPLATE.replace(COUNT_PLACEHOLDER, str(len(articles)))
        .replace(ARTICLE_LIST_PLACEHOLDER, format_article_list(articles))
        .replace(QUERY_PLACEHOLDER, query)
    )


def build_grounded_messages(
    system_prompt: str,
    history: Sequence[dict[str, str]],
    articles: Sequence[Candidate],
    query: str,
) -> list[dict[str, str]]:
    """
    Assemble the message list for a grounded chat turn.

    Args:
        system_prompt: Prompt template, ``{{COUNT}}`` not yet replaced.
        history: Conversation turns including the current user message last.
        articles: Final grounding context.
        query: The current question.
    """
    return [
        {"role": "system", "content": render_system_prompt(system_prompt, len(articles))},
        *history[:-1],
        {"role": "user", "content": render_context_prompt(articles, query)},
    ]


def build_direct_messages(history: Sequence[dict[str, str]]) -> list[dict[str, str]]:
    """Message list for an ungrounded (small talk / direct) turn."""
    return [{"role": "system", "content": DIRECT_SYSTEM_PROMPT}, *history]


async def load_chat_system_prompt(
    store: ArticleStore,
    key: str,
    override: str | None = None,
) -> str:
    """
    Resolve the chat system prompt template.

    Order: explicit override, the store's config table, the built-in default.
    Store failures fall back to the default with a warning.
    """
    if override:
        return override
    try:
        value = await store.get_config_value(key)
    except BriefingRAGError as e:
        logger.warning("chat_prompt_load_failed", key=key, error=e.message)
        return DEFAULT_CHAT_SYSTEM_PROMPT
    if not value:
        logger.warning("chat_prompt_missing", key=key)
        return DEFAULT_CHAT_SYSTEM_PROMPT
    return value


__all__ = [
    "DEFAULT_CHAT_SYSTEM_PROMPT",
    "DIRECT_SYSTEM_PROMPT",
    "CHAT_CONTEXT_PROMPT_TEMPLATE",
    "NO_ARTICLES_LINE",
    "format_article_block",
    "format_article_list",
    "render_system_prompt",
    "render_context_prompt",
    "build_grounded_messages",
    "build_direct_messages",
    "load_chat_system_prompt",
]
