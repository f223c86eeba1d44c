"""
Provider-neutral entry point for LLM calls.

The rest of the pipeline talks to LLMGateway with plain ``{"role",
"content"}`` messages and a ModelSelector. The gateway picks the provider
from the selector, resolves the quota pool key, and converts the messages
into the provider's wire shape.

Usage:
    from briefing_rag.llm.gateway import LLMGateway

    text = await gateway.complete(messages, selector, json_mode=True)

    async for chunk in gateway.stream_chat(messages, selector, use_search=True):
        ...
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import structlog

from briefing_rag.llm.gemini import GeminiClient
from briefing_rag.llm.models import ModelSelector, Provider, QuotaPoolRegistry
from briefing_rag.llm.siliconflow import SiliconFlowClient

logger = structlog.get_logger(__name__)


def to_gemini_contents(
    messages: list[dict[str, str]],
) -> tuple[str | None, list[dict[str, Any]]]:
    """
    Split messages into a Gemini system instruction and ``contents`` list.

    System messages are concatenated into the instruction. ``user`` stays
    ``user``; every other role becomes ``model``. Empty turns are dropped.
    """
    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []
    for message in messages:
        role = (message.get("role") or "").lower()
        content = message.get("content") or ""
        if not content.strip():
            continue
        if role == "system":
            system_parts.append(content)
            continue
        contents.append(
            {
                "role": "user" if role == "user" else "model",
                "parts": [{"text": content}],
            }
        )
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return system_instruction, contents


class LLMGateway:
    """Routes completion and streaming calls to Gemini or SiliconFlow."""

    def __init__(
        self,
        gemini: GeminiClient,
        siliconflow: SiliconFlowClient,
        pools: QuotaPoolRegistry,
    ) -> None:
        self._gemini = gemini
        self._siliconflow = siliconflow
        self._pools = pools
        self._log = logger.bind(component="llm_gateway")

    @property
    def pool_aliases(self) -> list[str]:
        """Configured Gemini quota pool aliases, besides the default pool."""
        return self._pools.aliases

    async def complete(
        self,
        messages: list[dict[str, str]],
        selector: ModelSelector,
        *,
        json_mode: bool = False,
    ) -> str:
        """
        Run a non-streaming completion.

        Raises:
            QuotaExceeded: Provider quota exhausted.
            UpstreamError: Missing key or any other provider failure.
        """
        self._log.debug(
            "llm_complete",
            model=selector.model_id,
            provider=selector.provider.value,
            json_mode=json_mode,
        )
        if selector.provider is Provider.SILICONFLOW:
            return await self._siliconflow.complete(
                messages, model=selector.model_id, json_mode=json_mode
            )

        credential = self._pools.resolve(selector.pool)
        system_instruction, contents = to_gemini_contents(messages)
        return await self._gemini.generate(
            contents,
            model=selector.model_id,
            api_key=credential.key,
            system_instruction=system_instruction,
            json_mode=json_mode,
        )

    def stream_chat(
        self,
        messages: list[dict[str, str]],
        selector: ModelSelector,
        *,
        use_search: bool = False,
    ) -> AsyncIterator[str]:
        """
        Return a lazy async iterator of answer text.

        Nothing is sent until the first item is awaited. Provider status
        errors and a missing SiliconFlow key are raised by that first await;
        ChatTurn awaits it inside prepare(), before any response is sent. An
        unknown Gemini quota pool is raised here, immediately.
        """
        self._log.info(
            "llm_stream_requested",
            model=selector.model_id,
            provider=selector.provider.value,
            pool=selector.pool,
            use_search=use_search,
        )
        if selector.provider is Provider.SILICONFLOW:
            return self._siliconflow.stream_chat(
                messages,
                model=selector.model_id,
                use_search=use_search,
                supports_tools=selector.supports_tools,
                expect_reasoning=selector.is_reasoning_model,
            )

        credential = self._pools.resolve(selector.pool)
        system_instruction, contents = to_gemini_contents(messages)
        return self._gemini.stream_generate(
            contents,
            model=selector.model_id,
            api_key=credential.key,
            system_instruction=system_instruction,
            use_search=use_search,
        )


__all__ = ["LLMGateway", "to_gemini_contents"]
