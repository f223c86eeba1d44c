from __future__ import annotations

import json
from collections.abc import Callable, Generator
from contextlib import ExitStack
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from briefing_rag.api import __api_version__, __version__
from briefing_rag.api.main import create_app
from briefing_rag.api.middleware.logging import (
    MAX_LOGGED_CHARS,
    REDACTED,
    clip_long_values,
    scrub_credentials,
)
from briefing_rag.api.middleware.rate_limit import limiter
from briefing_rag.config import settings as settings_module
from briefing_rag.config.settings import Settings
from briefing_rag.errors import QuotaExceeded
from briefing_rag.rag.orchestrator import ChatOrchestrator
from briefing_rag.rag.router import IntentRouter
from briefing_rag.retrieval.hybrid_retriever import HybridRetriever
from briefing_rag.retrieval.reranker import LLMReranker
from briefing_rag.retrieval.store import InMemoryArticleStore
from briefing_rag.services import Services, build_services

from conftest import FakeEmbedder, FakeGateway, make_record


def _article_store() -> InMemoryArticleStore:
    return InMemoryArticleStore(
        [
            make_record("1", "OpenAI launches GPT-5", similarity=0.90, sourceName="Example Daily"),
            make_record("2", "Frontier model pricing", similarity=0.80),
            make_record("3", "OpenAI board shake-up", similarity=0.55),
            make_record("4", "Gardening", similarity=0.10),
        ]
    )


def _build_services(
    settings: Settings,
    gateway: FakeGateway,
    embedder: FakeEmbedder,
) -> Services:
    store = _article_store()
    retriever = HybridRetriever(embedder, store, settings)
    reranker = LLMReranker(gateway, settings)
    router = IntentRouter(gateway, settings)
    return Services(
        settings=settings,
        http=httpx.AsyncClient(),
        gateway=gateway,
        store=store,
        retriever=retriever,
        reranker=reranker,
        router=router,
        orchestrator=ChatOrchestrator(retriever, reranker, gateway, store, router, settings),
    )


@pytest.fixture
def make_client(
    monkeypatch: pytest.MonkeyPatch,
    make_settings: Callable[..., Settings],
) -> Generator[Callable[..., TestClient], None, None]:
    """
    Factory for TestClients backed by fake providers and an in-memory store.

    The settings cache is cleared and the shared rate limiter reset so limits
    from one test never leak into another.
    """
    settings_module.get_settings.cache_clear()
    monkeypatch.setenv("ENVIRONMENT", "local")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "100")
    limiter.reset()
    stack = ExitStack()

    def _factory(
        gateway: FakeGateway | None = None,
        embedder: FakeEmbedder | None = None,
        upstream: Callable[[httpx.Request], httpx.Response] | None = None,
        **overrides: Any,
    ) -> TestClient:
        settings = make_settings(**overrides)
        if upstream is not None:
            # Real provider clients over a mocked network
            services = build_services(
                settings,
                http=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
                store=_article_store(),
            )
        else:
            services = _build_services(
                settings,
                gateway or FakeGateway(stream_chunks=["OpenAI shipped ", "GPT-5 [1]."]),
                embedder or FakeEmbedder(),
            )
        app = create_app(settings=settings, services=services)
        return stack.enter_context(TestClient(app))

    try:
        yield _factory
    finally:
        stack.close()
        limiter.reset()
        settings_module.get_settings.cache_clear()


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client()


def _sse_events(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(frame[len("data: ") :])
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


# =============================================================================
# Application basics
# =============================================================================


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "ok"
    assert data["environment"] == "local"
    assert data["version"] == __version__
    assert data["api_version"] == __api_version__
    assert data["checks"]["article_store"]["status"] == "skipped"
    assert data["checks"]["article_store"]["backend"] == "InMemoryArticleStore"
    assert data["checks"]["gemini"]["status"] == "ok"


def test_root_endpoint(client: TestClient) -> None:
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()

    assert data["name"] == "Briefing RAG API"
    assert data["version"] == __version__
    assert data["api_version"] == __api_version__
    assert data["health"] == "/health"
    assert data["environment"] == "local"


def test_cors_headers(client: TestClient) -> None:
    origin = "http://localhost:3000"

    response = client.get("/health", headers={"Origin": origin})

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == origin
    assert response.headers.get("access-control-allow-credentials") == "true"
    assert response.headers.get("access-control-expose-headers") == "X-Request-ID"


def test_cors_preflight_options(client: TestClient) -> None:
    origin = "http://localhost:3000"

    response = client.options(
        "/api/v1/chat",
        headers={
            "Origin": origin,
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == origin
    assert "POST" in response.headers.get("access-control-allow-methods", "")


def test_request_id_is_echoed_or_generated(client: TestClient) -> None:
    echoed = client.get("/health", headers={"X-Request-ID": "abc123"})
    generated = client.get("/health")

    assert echoed.headers["X-Request-ID"] == "abc123"
    assert len(generated.headers["X-Request-ID"]) == 12


def test_404_response(client: TestClient) -> None:
    response = client.get("/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}


# =============================================================================
# Chat
# =============================================================================


def test_chat_streams_server_sent_events(client: TestClient) -> None:
    response = client.post(
        "/api/v1/chat",
        json={"messages": [{"role": "user", "content": "OpenAI"}], "useSearch": False},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    events = _sse_events(response.text)
    assert [e["type"] for e in events] == ["metadata", "text", "text", "complete"]
    assert [a["id"] for a in events[0]["articles"]] == ["1", "3", "2"]
    assert events[0]["articles"][0]["index"] == 1
    assert "".join(e["content"] for e in events if e["type"] == "text") == (
        "OpenAI shipped GPT-5 [1]."
    )
    assert events[-1]["stats"] == {"retrieved": 3, "cited": 1}


def test_chat_invalid_request_is_a_json_400(client: TestClient) -> None:
    response = client.post("/api/v1/chat", json={"messages": []})

    assert response.status_code == 400
    assert response.json()["error_type"] == "InvalidRequest"


def test_chat_malformed_body_is_invalid_request(client: TestClient) -> None:
    response = client.post("/api/v1/chat", json={"messages": "not a list"})

    assert response.status_code == 400
    body = response.json()
    assert body["error_type"] == "InvalidRequest"
    assert body["status_code"] == 400


def test_chat_quota_error_mid_stream_is_an_error_event(
    make_client: Callable[..., TestClient],
) -> None:
    gateway = FakeGateway(
        stream_chunks=["Partial"],
        stream_error=QuotaExceeded("gemini quota exceeded"),
    )
    client = make_client(gateway=gateway)

    response = client.post("/api/v1/chat", json={"messages": [{"role": "user", "content": "OpenAI"}]})

    assert response.status_code == 200
    events = _sse_events(response.text)
    assert [e["type"] for e in events] == ["metadata", "text", "error"]
    assert events[-1]["error_type"] == "QuotaExceeded"
    assert events[-1]["status_code"] == 429
    assert gateway.stream_closed


def test_chat_model_quota_before_first_chunk_is_http_429(
    make_client: Callable[..., TestClient],
) -> None:
    requested: list[str] = []

    def exhausted(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return httpx.Response(
            429,
            headers={"Retry-After": "30"},
            json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED"}},
        )

    client = make_client(upstream=exhausted)

    response = client.post("/api/v1/chat", json={"messages": [{"role": "user", "content": "OpenAI"}]})

    assert response.status_code == 429
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["error_type"] == "QuotaExceeded"
    assert any(path.endswith(":streamGenerateContent") for path in requested)


def test_chat_with_missing_siliconflow_key_is_a_json_error(
    make_client: Callable[..., TestClient],
) -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"code": 429}})

    client = make_client(upstream=unreachable, siliconflow_api_key=None)

    response = client.post(
        "/api/v1/chat",
        json={"messages": [{"role": "user", "content": "OpenAI"}], "model": "Qwen/Qwen3-14B"},
    )

    assert response.status_code == 500
    assert response.json()["error_type"] == "UpstreamError"


# =============================================================================
# Search
# =============================================================================


def test_search_returns_ranked_page(make_client: Callable[..., TestClient]) -> None:
    client = make_client(search_page_size=2)

    first = client.get("/api/v1/search", params={"query": "OpenAI"})
    second = client.get("/api/v1/search", params={"query": "OpenAI", "page": 2})

    assert first.status_code == 200
    data = first.json()
    assert [a["id"] for a in data["articles"]] == ["1", "3"]
    assert data["articles"][0]["sourceName"] == "Example Daily"
    assert data["is_fallback"] is False
    assert data["error_snippet"] is None
    assert data["total"] == 3
    assert [a["id"] for a in second.json()["articles"]] == ["2"]


def test_search_reports_keyword_fallback(make_client: Callable[..., TestClient]) -> None:
    client = make_client(embedder=FakeEmbedder(fail_with="Embedding failed: quota"))

    data = client.get("/api/v1/search", params={"query": "OpenAI"}).json()

    assert data["is_fallback"] is True
    assert "Embedding failed: quota" in data["error_snippet"]
    assert [a["id"] for a in data["articles"]] == ["1", "3"]
    assert all(a["similarity"] == 0.0 for a in data["articles"])


def test_search_requires_a_query(client: TestClient) -> None:
    missing = client.get("/api/v1/search")
    blank = client.get("/api/v1/search", params={"query": "  "})

    assert missing.status_code == 400
    assert blank.status_code == 400
    assert blank.json()["error_type"] == "InvalidRequest"


def test_search_is_rate_limited(
    make_client: Callable[..., TestClient],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client = make_client()
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "2")
    settings_module.get_settings.cache_clear()

    statuses = [
        client.get("/api/v1/search", params={"query": "OpenAI"}).status_code
        for _ in range(3)
    ]

    assert statuses == [200, 200, 429]
    limited = client.get("/api/v1/search", params={"query": "OpenAI"})
    assert limited.json()["error_type"] == "rate_limit"
    assert limited.headers["Retry-After"] == "60"


# =============================================================================
# Models
# =============================================================================


def test_models_lists_catalog_and_pools(client: TestClient) -> None:
    response = client.get("/api/v1/models")

    assert response.status_code == 200
    data = response.json()
    assert data["default_model_id"] == "gemini-2.0-flash"
    assert data["quota_pools"] == ["alok"]
    ids = {model["id"] for model in data["models"]}
    assert {"gemini-2.0-flash", "Qwen/Qwen3-14B"} <= ids


# =============================================================================
# Logging processors
# =============================================================================


def test_scrub_credentials_redacts_fields_and_embedded_keys() -> None:
    event = {
        "event": "upstream_error",
        "gemini_api_key": "anything",
        "error": "400 for url ?key=AIzaSyA1234567890abcdefghijklmnop",
        "query": "OpenAI",
    }

    scrubbed = scrub_credentials(None, "info", dict(event))

    assert scrubbed["gemini_api_key"] == REDACTED
    assert "AIza" not in scrubbed["error"]
    assert REDACTED in scrubbed["error"]
    assert scrubbed["query"] == "OpenAI"


def test_clip_long_values_keeps_event_name() -> None:
    long_prompt = "x" * (MAX_LOGGED_CHARS + 50)

    clipped = clip_long_values(None, "info", {"event": long_prompt, "prompt": long_prompt})

    assert clipped["event"] == long_prompt
    assert clipped["prompt"].startswith("x" * MAX_LOGGED_CHARS)
    assert clipped["prompt"].endswith("...(+50 chars)")
