from __future__ import annotations

from collections.abc import Callable

import pytest

from briefing_rag.config.settings import Settings
from briefing_rag.errors import QuotaExceeded, RerankFailure, UpstreamError
from briefing_rag.llm.models import ModelSelector
from briefing_rag.retrieval.reranker import (
    LLMReranker,
    build_rerank_prompt,
    parse_selected_ids,
)
from briefing_rag.schemas import Candidate

from conftest import FakeGateway


def _candidates(count: int) -> list[Candidate]:
    return [
        Candidate(id=str(i), title=f"Story {i}", similarity=1 - i / 100, match_priority=2)
        for i in range(count)
    ]


def test_parse_selected_ids_accepts_common_shapes() -> None:
    assert parse_selected_ids('{"selected_ids": ["3", 1, "3"]}') == ["3", "1"]
    assert parse_selected_ids('```json\n["a", "b"]\n```') == ["a", "b"]
    assert parse_selected_ids('<think>hmm</think>Sure: {"selected_ids": [7]}') == ["7"]


def test_parse_selected_ids_rejects_unusable_output() -> None:
    with pytest.raises(RerankFailure):
        parse_selected_ids("I picked the best ones.")
    with pytest.raises(RerankFailure):
        parse_selected_ids('{"ids": ["1"]}')


def test_parse_selected_ids_skips_bracketed_reasoning() -> None:
    text = 'I compared [2] and [5]. {"selected_ids": ["5", "7"]}'

    assert parse_selected_ids(text) == ["5", "7"]


@pytest.mark.asyncio
async def test_bracketed_reasoning_does_not_change_the_selection(settings: Settings) -> None:
    gateway = FakeGateway(
        completions=['Stories [0] and [1] repeat each other. {"selected_ids": ["3", "12"]}']
    )
    reranker = LLMReranker(gateway=gateway, settings=settings)

    outcome = await reranker.narrow(_candidates(20), "OpenAI", limit=5)

    assert outcome.reranked
    assert [c.id for c in outcome.kept] == ["3", "12"]


def test_build_rerank_prompt_lists_every_candidate() -> None:
    candidates = _candidates(3)

    prompt = build_rerank_prompt(candidates, "OpenAI", limit=2)

    assert '"OpenAI"' in prompt
    assert "return at most 2" in prompt
    for candidate in candidates:
        assert f"ID: {candidate.id} |" in prompt


@pytest.mark.asyncio
async def test_small_candidate_sets_are_not_reranked(settings: Settings) -> None:
    gateway = FakeGateway()
    reranker = LLMReranker(gateway=gateway, settings=settings)
    candidates = _candidates(10)

    outcome = await reranker.narrow(candidates, "OpenAI", limit=10)

    assert outcome.kept == candidates
    assert not outcome.reranked
    assert gateway.complete_calls == []


@pytest.mark.asyncio
async def test_selection_keeps_retrieval_order_and_limit(settings: Settings) -> None:
    gateway = FakeGateway(completions=['{"selected_ids": ["14", "2", "9", "99"]}'])
    reranker = LLMReranker(gateway=gateway, settings=settings)

    outcome = await reranker.narrow(
        _candidates(15),
        "OpenAI",
        model=ModelSelector.parse("gemini-2.0-flash@alok"),
        limit=2,
    )

    assert outcome.reranked
    assert [c.id for c in outcome.kept] == ["2", "9"]

    call = gateway.complete_calls[0]
    assert call["json_mode"] is True
    assert call["selector"] == ModelSelector(model_id=settings.rerank_model_id, pool="alok")


@pytest.mark.asyncio
async def test_rerank_failure_falls_back_to_positional_order(settings: Settings) -> None:
    gateway = FakeGateway(completions=["not json at all"])
    reranker = LLMReranker(gateway=gateway, settings=settings)
    candidates = _candidates(20)

    outcome = await reranker.narrow(candidates, "OpenAI", limit=10)

    assert not outcome.reranked
    assert outcome.kept == candidates[:10]
    assert outcome.fallback_reason == "ReRankFailure"


@pytest.mark.asyncio
async def test_upstream_error_and_empty_selection_fall_back(settings: Settings) -> None:
    candidates = _candidates(20)

    failing = LLMReranker(
        gateway=FakeGateway(completions=[UpstreamError("boom")]), settings=settings
    )
    outcome = await failing.narrow(candidates, "OpenAI")
    assert outcome.kept == candidates[: settings.context_size]
    assert outcome.fallback_reason == "UpstreamError"

    empty = LLMReranker(
        gateway=FakeGateway(completions=['{"selected_ids": ["nope"]}']), settings=settings
    )
    outcome = await empty.narrow(candidates, "OpenAI")
    assert outcome.kept == candidates[: settings.context_size]
    assert outcome.fallback_reason == "empty_selection"


@pytest.mark.asyncio
async def test_quota_error_retries_once_with_fallback_model(settings: Settings) -> None:
    gateway = FakeGateway(
        completions=[
            QuotaExceeded("gemini quota exceeded"),
            '{"selected_ids": ["0", "1"]}',
        ]
    )
    reranker = LLMReranker(gateway=gateway, settings=settings)

    outcome = await reranker.narrow(_candidates(20), "OpenAI", limit=10)

    assert outcome.reranked
    assert [c.id for c in outcome.kept] == ["0", "1"]
    models = [call["selector"].model_id for call in gateway.complete_calls]
    assert models == [settings.rerank_model_id, settings.rerank_fallback_model_id]


@pytest.mark.asyncio
async def test_trigger_follows_larger_context_limit(
    make_settings: Callable[..., Settings],
) -> None:
    gateway = FakeGateway()
    reranker = LLMReranker(gateway=gateway, settings=make_settings(rerank_trigger_size=10))
    candidates = _candidates(25)

    outcome = await reranker.narrow(candidates, "OpenAI", limit=30)

    assert outcome.kept == candidates
    assert gateway.complete_calls == []
