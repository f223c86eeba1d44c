from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from briefing_rag.errors import QuotaExceeded, RetrievalBackendError, UpstreamError
from briefing_rag.llm.gemini import GeminiClient
from briefing_rag.llm.siliconflow import GOOGLE_SEARCH_FUNCTION, SiliconFlowClient
from briefing_rag.retrieval.store import SupabaseArticleStore

GEMINI_BASE = "https://gemini.test/v1beta"
SILICONFLOW_BASE = "https://siliconflow.test/v1"
SUPABASE_URL = "https://project.supabase.test"


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sse(*events: object, done: bool = False) -> bytes:
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


# =============================================================================
# Gemini
# =============================================================================


@pytest.mark.asyncio
async def test_gemini_embed_content_sends_task_type_and_key() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embedding": {"values": [0.1, 0.2, 0.3]}})

    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE)
        vector = await client.embed_content(
            "OpenAI",
            model="gemini-embedding-001",
            task_type="RETRIEVAL_QUERY",
            api_key="pool-key",
            dimension=3,
        )

    assert vector == [0.1, 0.2, 0.3]
    assert seen["url"] == f"{GEMINI_BASE}/models/gemini-embedding-001:embedContent"
    assert seen["key"] == "pool-key"
    assert seen["body"]["taskType"] == "RETRIEVAL_QUERY"
    assert seen["body"]["outputDimensionality"] == 3


@pytest.mark.asyncio
async def test_gemini_429_is_quota_exceeded_with_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"Retry-After": "30"},
            json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED"}},
        )

    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE)
        with pytest.raises(QuotaExceeded) as exc_info:
            await client.generate(
                [{"role": "user", "parts": [{"text": "hi"}]}],
                model="gemini-2.0-flash",
                api_key="k",
            )

    assert exc_info.value.status_code == 429
    assert exc_info.value.details["retry_after"] == "30"


@pytest.mark.asyncio
async def test_gemini_retries_transport_errors_then_succeeds() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection reset", request=request)
        body = json.loads(request.content)
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"text": "thinking", "thought": True},
                                {"text": '{"selected_ids": ["1"]}'},
                            ]
                        }
                    }
                ]
            },
        )

    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE, max_retries=2)
        text = await client.generate(
            [{"role": "user", "parts": [{"text": "rank"}]}],
            model="gemini-2.0-flash",
            api_key="k",
            json_mode=True,
        )

    assert text == '{"selected_ids": ["1"]}'
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_gemini_transport_errors_exhaust_into_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE, max_retries=2)
        with pytest.raises(UpstreamError):
            await client.embed_content(
                "x", model="m", task_type="RETRIEVAL_QUERY", api_key="k", dimension=3
            )


@pytest.mark.asyncio
async def test_gemini_stream_yields_text_and_attaches_search_tool() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [{"content": {"parts": [{"text": "OpenAI "}]}}]},
                {"candidates": [{"content": {"parts": [{"text": "shipped [1]."}]}}]},
            ),
            headers={"content-type": "text/event-stream"},
        )

    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE)
        chunks = [
            chunk
            async for chunk in client.stream_generate(
                [{"role": "user", "parts": [{"text": "news?"}]}],
                model="gemini-2.0-flash",
                api_key="k",
                system_instruction="Cite with [N].",
                use_search=True,
            )
        ]

    assert chunks == ["OpenAI ", "shipped [1]."]
    assert seen["params"] == {"alt": "sse"}
    assert seen["body"]["tools"] == [{"googleSearch": {}}]
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "Cite with [N]."}]}


@pytest.mark.asyncio
async def test_gemini_stream_error_event_raises_mid_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [{"content": {"parts": [{"text": "Partial"}]}}]},
                {"error": {"code": 429, "message": "Resource has been exhausted"}},
            ),
        )

    received: list[str] = []
    async with _client(handler) as http:
        client = GeminiClient(http=http, base_url=GEMINI_BASE)
        with pytest.raises(QuotaExceeded):
            async for chunk in client.stream_generate(
                [{"role": "user", "parts": [{"text": "news?"}]}],
                model="gemini-2.0-flash",
                api_key="k",
            ):
                received.append(chunk)

    assert received == ["Partial"]


# =============================================================================
# SiliconFlow
# =============================================================================


@pytest.mark.asyncio
async def test_siliconflow_stream_hides_reasoning_and_skips_bad_lines() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        body = (
            _sse({"choices": [{"delta": {"content": "<think>weighing sources"}}]})
            + b"data: {not json}\n\n"
            + _sse(
                {"choices": [{"delta": {"content": "</think>\nAnswer "}}]},
                {"choices": [{"delta": {"content": "[2]"}}]},
                done=True,
            )
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as http:
        client = SiliconFlowClient(http=http, base_url=SILICONFLOW_BASE, api_key="sf-key")
        chunks = [
            chunk
            async for chunk in client.stream_chat(
                [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "News?"},
                ],
                model="Qwen/Qwen3-14B",
                use_search=True,
            )
        ]

    assert "".join(chunks) == "Answer [2]"
    assert seen["auth"] == "Bearer sf-key"
    assert seen["body"]["tools"] == [GOOGLE_SEARCH_FUNCTION]
    assert seen["body"]["tool_choice"] == "auto"
    assert seen["body"]["messages"] == [{"role": "user", "content": "Be brief.\n\nNews?"}]


@pytest.mark.asyncio
async def test_siliconflow_omits_tools_for_toolless_models() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse(done=True))

    async with _client(handler) as http:
        client = SiliconFlowClient(http=http, base_url=SILICONFLOW_BASE, api_key="sf-key")
        chunks = [
            chunk
            async for chunk in client.stream_chat(
                [{"role": "user", "content": "Hi"}],
                model="THUDM/glm-4-9b-chat",
                use_search=True,
                supports_tools=False,
            )
        ]

    assert chunks == []
    assert "tools" not in seen["body"]


@pytest.mark.asyncio
async def test_siliconflow_complete_json_mode_and_errors() -> None:
    responses = [
        httpx.Response(
            200,
            json={"choices": [{"message": {"content": '<think>x</think>{"intent": "DIRECT"}'}}]},
        ),
        httpx.Response(500, text="internal error"),
    ]
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return responses.pop(0)

    async with _client(handler) as http:
        client = SiliconFlowClient(http=http, base_url=SILICONFLOW_BASE, api_key="sf-key")
        text = await client.complete(
            [{"role": "user", "content": "classify"}], model="Qwen/Qwen3-14B", json_mode=True
        )
        with pytest.raises(UpstreamError) as exc_info:
            await client.complete([{"role": "user", "content": "again"}], model="Qwen/Qwen3-14B")

    assert text == '{"intent": "DIRECT"}'
    assert bodies[0]["response_format"] == {"type": "json_object"}
    assert bodies[0]["temperature"] == 0.5
    assert exc_info.value.details["status_code"] == 500


@pytest.mark.asyncio
async def test_siliconflow_without_key_fails_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with _client(handler) as http:
        client = SiliconFlowClient(http=http, base_url=SILICONFLOW_BASE, api_key=None)
        with pytest.raises(UpstreamError, match="SILICONFLOW_API_KEY"):
            await client.complete([{"role": "user", "content": "hi"}], model="Qwen/Qwen3-14B")


# =============================================================================
# Supabase article store
# =============================================================================


@pytest.mark.asyncio
async def test_supabase_hybrid_search_validates_and_orders_rows() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["apikey"] = request.headers["apikey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[
                {"id": 7, "title": "Chip news", "similarity": 0.8, "match_priority": 2},
                {"id": 3, "title": "OpenAI", "similarity": 0.6, "match_priority": 1,
                 "sourceName": "Example Daily", "keywords": None},
            ],
        )

    async with _client(handler) as http:
        store = SupabaseArticleStore(http=http, url=SUPABASE_URL, service_key="svc")
        rows = await store.hybrid_search("OpenAI", [0.1, 0.2], match_count=5)

    assert [row.id for row in rows] == ["3", "7"]
    assert rows[0].source_name == "Example Daily"
    assert rows[0].keywords == []
    assert seen["url"] == f"{SUPABASE_URL}/rest/v1/rpc/hybrid_search_articles"
    assert seen["apikey"] == "svc"
    assert seen["body"] == {
        "query_text": "OpenAI",
        "query_embedding": [0.1, 0.2],
        "match_count": 5,
    }


@pytest.mark.asyncio
async def test_supabase_failures_are_retrieval_backend_errors() -> None:
    responses = [
        httpx.Response(500, text="db down"),
        httpx.Response(200, json={"not": "a list"}),
        httpx.Response(200, json=[{"title": "row without id"}]),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async with _client(handler) as http:
        store = SupabaseArticleStore(http=http, url=SUPABASE_URL, service_key="svc")
        for _ in range(3):
            with pytest.raises(RetrievalBackendError):
                await store.hybrid_search("OpenAI", None, match_count=5)


@pytest.mark.asyncio
async def test_supabase_get_config_value() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        if request.url.params["key"] == "eq.gemini_chat_prompt":
            return httpx.Response(200, json=[{"value": "You are {{COUNT}}"}])
        return httpx.Response(200, json=[])

    async with _client(handler) as http:
        store = SupabaseArticleStore(http=http, url=SUPABASE_URL, service_key="svc")
        prompt = await store.get_config_value("gemini_chat_prompt")
        missing = await store.get_config_value("other")

    assert prompt == "You are {{COUNT}}"
    assert missing is None
    assert seen["params"]["select"] == "value"
