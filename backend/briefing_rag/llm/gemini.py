"""
Gemini client over the Generative Language REST API.

Covers the three calls the pipeline needs:
- embed_content: query/document embeddings (``models/{m}:embedContent``)
- generate: non-streaming completion, optionally in JSON mode
- stream_generate: streamed completion (``:streamGenerateContent?alt=sse``)

The client holds no credentials. Every call receives the API key of the quota
pool chosen for the request, so one client instance serves every pool.

Usage:
    from briefing_rag.llm.gemini import GeminiClient

    client = GeminiClient(http=httpx.AsyncClient(), base_url=settings.gemini_base_url)
    vector = await client.embed_content(
        "OpenAI", model="gemini-embedding-001", task_type="RETRIEVAL_QUERY",
        api_key=key, dimension=768,
    )
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
import structlog

from briefing_rag.errors import UpstreamError
from briefing_rag.llm.transport import iter_sse_data, post_json, raise_for_upstream_status

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

PROVIDER_NAME = "gemini"
API_KEY_HEADER = "x-goog-api-key"

DEFAULT_MAX_OUTPUT_TOKENS = 8192
DEFAULT_TEMPERATURE = 0.7

# Chat answers are returned verbatim, including sensitive news topics
SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]

GOOGLE_SEARCH_TOOL = {"googleSearch": {}}


def _extract_text(payload: dict[str, Any]) -> str:
    """Concatenate text parts of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    return "".join(
        part.get("text", "") for part in parts if isinstance(part, dict) and not part.get("thought")
    )


class GeminiClient:
    """Thin async wrapper around the Generative Language REST endpoints."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        max_retries: int = 2,
    ) -> None:
        self._http = http
        self._base_url = str(base_url).rstrip("/")
        self._max_retries = max_retries
        self._log = logger.bind(component="gemini_client")

    def _url(self, model: str, method: str) -> str:
        return f"{self._base_url}/models/{model}:{method}"

    async def embed_content(
        self,
        text: str,
        *,
        model: str,
        task_type: str,
        api_key: str,
        dimension: int,
    ) -> list[float]:
        """
        Embed a single text.

        Returns:
            The embedding vector.

        Raises:
            QuotaExceeded: Pool is out of quota.
            UpstreamError: Request failed or the response has no vector.
        """
        payload = {
            "model": f"models/{model}",
            "content": {"parts": [{"text": text}], "role": "user"},
            "taskType": task_type,
            "outputDimensionality": dimension,
        }
        body = await post_json(
            self._http,
            self._url(model, "embedContent"),
            provider=PROVIDER_NAME,
            payload=payload,
            headers={API_KEY_HEADER: api_key},
            max_retries=self._max_retries,
        )

        values = (body.get("embedding") or {}).get("values") if isinstance(body, dict) else None
        if not values or not isinstance(values, list):
            raise UpstreamError("Gemini embedding response contained no values")
        return [float(v) for v in values]

    async def generate(
        self,
        contents: list[dict[str, Any]],
        *,
        model: str,
        api_key: str,
        system_instruction: str | None = None,
        json_mode: bool = False,
        temperature: float | None = None,
    ) -> str:
        """
        Run a non-streaming completion and return its text.

        Args:
            contents: Gemini ``contents`` list (role + parts).
            model: Model id.
            api_key: Key of the selected quota pool.
            system_instruction: Optional system prompt.
            json_mode: Ask for an ``application/json`` response.
            temperature: Optional sampling temperature.
        """
        generation_config: dict[str, Any] = {}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        if temperature is not None:
            generation_config["temperature"] = temperature

        payload: dict[str, Any] = {"contents": contents}
        if generation_config:
            payload["generationConfig"] = generation_config
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        body = await post_json(
            self._http,
            self._url(model, "generateContent"),
            provider=PROVIDER_NAME,
            payload=payload,
            headers={API_KEY_HEADER: api_key},
            max_retries=self._max_retries,
        )
        if not isinstance(body, dict):
            raise UpstreamError("Gemini returned an unexpected response shape")
        return _extract_text(body)

    async def stream_generate(
        self,
        contents: list[dict[str, Any]],
        *,
        model: str,
        api_key: str,
        system_instruction: str | None = None,
        use_search: bool = False,
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text fragments.

        The HTTP response is opened lazily on first iteration and closed when
        the generator finishes, raises, or is closed by the consumer.

        Raises:
            QuotaExceeded: Pool is out of quota.
            UpstreamError: Connection failure, non-2xx status, or a broken
                event payload mid-stream.
        """
        payload: dict[str, Any] = {
            "contents": contents,
            "safetySettings": SAFETY_SETTINGS,
            "generationConfig": {
                "maxOutputTokens": DEFAULT_MAX_OUTPUT_TOKENS,
                "temperature": DEFAULT_TEMPERATURE,
            },
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if use_search:
            payload["tools"] = [GOOGLE_SEARCH_TOOL]

        log = self._log.bind(model=model, use_search=use_search)
        log.info("gemini_stream_started", turns=len(contents))

        try:
            async with self._http.stream(
                "POST",
                self._url(model, "streamGenerateContent"),
                params={"alt": "sse"},
                json=payload,
                headers={API_KEY_HEADER: api_key},
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise_for_upstream_status(response, PROVIDER_NAME, body)

                async for data in iter_sse_data(response):
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise UpstreamError(f"Malformed Gemini stream event: {e}") from e
                    if isinstance(event, dict) and event.get("error"):
                        error = event["error"]
                        raise_for_upstream_status(
                            httpx.Response(int(error.get("code") or 500)),
                            PROVIDER_NAME,
                            json.dumps(error),
                        )
                    text = _extract_text(event) if isinstance(event, dict) else ""
                    if text:
                        yield text
        except httpx.TransportError as e:
            log.error("gemini_stream_transport_error", error=str(e))
            raise UpstreamError(f"Gemini stream failed: {e}") from e

        log.info("gemini_stream_finished")


__all__ = ["GeminiClient"]
