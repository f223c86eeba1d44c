"""
SiliconFlow client (OpenAI-compatible ``/chat/completions``).

Vendor-qualified model ids such as ``Qwen/Qwen3-14B`` or
``deepseek-ai/DeepSeek-R1-Distill-Qwen-7B`` are served from here. Several of
these models are picky about their input, so every request goes through
prepare_messages():

- ``model`` roles become ``assistant``; unknown roles and empty turns are dropped
- system content is merged into the first user turn, since some models
  ignore or reject a separate system message

Reasoning models stream their chain-of-thought before the answer. The
streamed output passes through ThinkingStreamFilter so only the answer
reaches the client.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
import structlog

from briefing_rag.errors import UpstreamError
from briefing_rag.llm.text import ThinkingStreamFilter, strip_reasoning
from briefing_rag.llm.transport import iter_sse_data, post_json, raise_for_upstream_status

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

PROVIDER_NAME = "siliconflow"

VALID_ROLES = frozenset({"system", "user", "assistant"})

DEFAULT_TEMPERATURE = 0.7
JSON_TEMPERATURE = 0.5

GOOGLE_SEARCH_FUNCTION = {
    "type": "function",
    "function": {
        "name": "google_search",
        "description": "Perform a google search to get latest information.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The search query string",
                },
            },
            "required": ["query"],
        },
    },
}


def prepare_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    """
    Normalize chat messages for SiliconFlow models.

    Args:
        messages: ``{"role", "content"}`` dicts in conversation order.

    Returns:
        New list with sanitized roles, empty turns removed and system content
        folded into the first user turn.
    """
    sanitized: list[dict[str, str]] = []
    for message in messages:
        role = (message.get("role") or "").lower()
        if role == "model":
            role = "assistant"
        content = message.get("content") or ""
        if role not in VALID_ROLES or not content.strip():
            continue
        sanitized.append({"role": role, "content": content})

    system_parts = [m["content"] for m in sanitized if m["role"] == "system"]
    conversation = [dict(m) for m in sanitized if m["role"] != "system"]

    if system_parts:
        system_content = "\n\n".join(system_parts)
        if conversation and conversation[0]["role"] == "user":
            conversation[0]["content"] = f"{system_content}\n\n{conversation[0]['content']}"
        else:
            conversation.insert(0, {"role": "user", "content": system_content})

    return conversation


def _delta_content(event: dict[str, Any]) -> str:
    choices = event.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    return delta.get("content") or ""


class SiliconFlowClient:
    """Async client for the SiliconFlow chat completions endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: str | None,
        max_retries: int = 2,
    ) -> None:
        self._http = http
        self._url = f"{str(base_url).rstrip('/')}/chat/completions"
        self._api_key = api_key
        self._max_retries = max_retries
        self._log = logger.bind(component="siliconflow_client")

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise UpstreamError("SILICONFLOW_API_KEY is not configured.")
        return {"Authorization": f"Bearer {self._api_key}"}

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        json_mode: bool = False,
    ) -> str:
        """
        Non-streaming completion with reasoning removed.

        Raises:
            QuotaExceeded: Rate limited.
            UpstreamError: Any other failure.
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": prepare_messages(messages),
            "stream": False,
            "temperature": JSON_TEMPERATURE if json_mode else DEFAULT_TEMPERATURE,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        body = await post_json(
            self._http,
            self._url,
            provider=PROVIDER_NAME,
            payload=payload,
            headers=self._headers(),
            max_retries=self._max_retries,
        )

        try:
            content = body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError("SiliconFlow response contained no message") from e
        return strip_reasoning(content)

    async def stream_chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        use_search: bool = False,
        supports_tools: bool = True,
        expect_reasoning: bool = False,
    ) -> AsyncIterator[str]:
        """
        Stream answer text, hiding any ``<think>`` block.

        Args:
            messages: Conversation including the system prompt.
            model: Vendor-qualified model id.
            use_search: Attach the google_search function tool.
            supports_tools: False for models that reject the tools parameter.
            expect_reasoning: Buffer until ``</think>`` even if the opening tag
                is missing.

        Raises:
            QuotaExceeded: Rate limited.
            UpstreamError: Connection failure or non-2xx status.
        """
        headers = self._headers()
        conversation = prepare_messages(messages)
        payload: dict[str, Any] = {
            "model": model,
            "messages": conversation,
            "stream": True,
            "temperature": DEFAULT_TEMPERATURE,
        }
        if use_search and supports_tools:
            payload["tools"] = [GOOGLE_SEARCH_FUNCTION]
            payload["tool_choice"] = "auto"

        log = self._log.bind(model=model, use_search=use_search)
        log.info(
            "siliconflow_stream_started",
            turns=len(conversation),
            tools_attached="tools" in payload,
        )

        thinking = ThinkingStreamFilter(expect_reasoning=expect_reasoning)
        try:
            async with self._http.stream(
                "POST", self._url, json=payload, headers=headers
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise_for_upstream_status(response, PROVIDER_NAME, body)

                async for data in iter_sse_data(response):
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        log.warning("siliconflow_stream_bad_event", data=data[:120])
                        continue
                    if not isinstance(event, dict):
                        continue
                    if event.get("error"):
                        raise UpstreamError(
                            f"SiliconFlow stream error: {event['error']}"
                        )
                    visible = thinking.feed(_delta_content(event))
                    if visible:
                        yield visible
        except httpx.TransportError as e:
            log.error("siliconflow_stream_transport_error", error=str(e))
            raise UpstreamError(f"SiliconFlow stream failed: {e}") from e

        remainder = thinking.flush()
        if remainder:
            yield remainder
        log.info("siliconflow_stream_finished")


__all__ = ["SiliconFlowClient", "prepare_messages"]
