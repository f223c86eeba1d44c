"""
Chat orchestration: retrieval-augmented, streaming, with citations.

Architecture:
    ChatRequest
        ↓ validate + parse model selector
    [IntentRouter]          (optional, off by default)
        ↓
    HybridRetriever         embed → store → tier ranking (degrades to keywords)
        ↓
    noise floor             similarity > noise_floor (skipped when degraded)
        ↓
    LLMReranker             only when more candidates than the context holds
        ↓
    grounding prompt        numbered article blocks + system prompt
        ↓
    LLMGateway.stream_chat  Gemini or SiliconFlow
        ↓
    events                  metadata → text* → complete | error

Turn stages:
    VALIDATING → EMBEDDING → RETRIEVING → RERANKING → READY → STREAMING → COMPLETED
                                                                       ↘ FAILED
    Retrieval stages are skipped for small talk, DIRECT and SEARCH_WEB turns,
    which go straight from VALIDATING to READY. READY means the upstream
    response is open and its first chunk has arrived, so quota and key
    failures are raised by prepare() rather than mid-stream. No stage is
    retried automatically.

Usage:
    orchestrator = ChatOrchestrator(retriever, reranker, gateway, store, router, settings)

    # Events for an SSE response
    async for event in orchestrator.ask(request):
        yield event.to_sse()

    # Or drive the turn directly
    turn = await orchestrator.prepare(request)
    try:
        async for chunk in turn.stream():
            ...
    finally:
        await turn.aclose()
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, AsyncIterator

import structlog
from pydantic import BaseModel, ConfigDict, Field

from briefing_rag.config.settings import Settings
from briefing_rag.errors import BriefingRAGError, InvalidRequest, UpstreamError
from briefing_rag.llm.gateway import LLMGateway
from briefing_rag.llm.models import ModelSelector, Provider
from briefing_rag.rag.citations import build_citations, extract_cited_indices
from briefing_rag.rag.context import (
    build_direct_messages,
    build_grounded_messages,
    load_chat_system_prompt,
)
from briefing_rag.rag.events import (
    ChatEvent,
    CitationStats,
    CompleteEvent,
    ErrorEvent,
    MetadataEvent,
    TextEvent,
)
from briefing_rag.rag.router import IntentRouter, RouterIntent
from briefing_rag.retrieval.hybrid_retriever import HybridRetriever
from briefing_rag.retrieval.reranker import LLMReranker
from briefing_rag.retrieval.store import ArticleStore
from briefing_rag.schemas import Candidate, ChatMessage, Citation

logger = structlog.get_logger(__name__)

# Quota routing tag used for chat-turn embeddings
CHAT_ROUTING_TAG = "ai"


class TurnStage(str, Enum):
    VALIDATING = "validating"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    RERANKING = "reranking"
    READY = "ready"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class ChatRequest(BaseModel):
    """A chat turn as sent by the client."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(default_factory=list)
    use_search: bool = Field(
        default=True,
        alias="useSearch",
        description="Allow the model to use web search.",
    )
    model: str | None = Field(
        default=None,
        description="Model selector, optionally with a quota pool: 'gemini-2.0-flash@alok'.",
    )
    is_small_talk_mode: bool = Field(
        default=False,
        alias="isSmallTalkMode",
        description="Skip retrieval and answer without grounding.",
    )


class ChatTurn:
    """
    A prepared chat turn.

    Attributes:
        request_id: Identifier bound to every log line of the turn.
        selector: Parsed model selector.
        intent: Router decision for the turn.
        articles: Final grounding context, in citation order.
        citations: Citation list matching ``articles``.
        stage: Current TurnStage.
        degraded: True when retrieval ran without an embedding.
        reranked: True when the re-ranker narrowed the candidates.
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.stage = TurnStage.VALIDATING
        self.selector: ModelSelector | None = None
        self.intent = RouterIntent.RAG_LOCAL
        self.articles: list[Candidate] = []
        self.citations: list[Citation] = []
        self.degraded = False
        self.reranked = False
        self._upstream: AsyncIterator[str] | None = None
        self._first_chunk: str | None = None
        self._stream: AsyncIterator[str] | None = None
        self._text_parts: list[str] = []
        self._log = logger.bind(request_id=request_id)

    async def _open_upstream(self, upstream: AsyncIterator[str]) -> None:
        """
        Attach the answer stream and wait for its first chunk.

        Provider status errors (429, missing key, 5xx) surface here, while
        the turn can still be answered with a plain error response.
        """
        self._upstream = upstream
        try:
            self._first_chunk = await anext(upstream)
        except StopAsyncIteration:
            self._first_chunk = None
        except BriefingRAGError:
            await self._close_upstream()
            raise
        except Exception as e:
            await self._close_upstream()
            raise UpstreamError(f"Chat stream failed to open: {e}") from e
        self.stage = TurnStage.READY

    @property
    def text(self) -> str:
        """Answer text streamed so far."""
        return "".join(self._text_parts)

    @property
    def stats(self) -> CitationStats:
        return CitationStats(
            retrieved=len(self.articles),
            cited=len(extract_cited_indices(self.text, len(self.articles))),
        )

    def stream(self) -> AsyncIterator[str]:
        """
        Lazy, single-pass iterator over the answer text.

        Raises:
            RuntimeError: If called more than once.
        """
        if self._stream is not None:
            raise RuntimeError("ChatTurn.stream() can only be consumed once")
        if self._upstream is None:
            raise RuntimeError("ChatTurn has no upstream stream attached")
        self._stream = self._iterate()
        return self._stream

    async def _iterate(self) -> AsyncIterator[str]:
        self.stage = TurnStage.STREAMING
        self._log.info("chat_stream_started")
        finished = False
        try:
            first, self._first_chunk = self._first_chunk, None
            if first is not None:
                self._text_parts.append(first)
                yield first
            async for chunk in self._upstream:
                self._text_parts.append(chunk)
                yield chunk
            finished = True
        except BriefingRAGError as e:
            self._log.error("chat_stream_failed", error_type=e.kind, error=e.message)
            raise
        except Exception as e:
            self._log.error("chat_stream_failed", error_type="UpstreamError", error=str(e))
            raise UpstreamError(f"Chat stream failed: {e}") from e
        finally:
            self.stage = TurnStage.COMPLETED if finished else TurnStage.FAILED
            await self._close_upstream()

        self._log.info(
            "chat_stream_complete",
            answer_length=len(self.text),
            **self.stats.model_dump(),
        )

    async def _close_upstream(self) -> None:
        upstream, self._upstream = self._upstream, None
        aclose = getattr(upstream, "aclose", None)
        if aclose is not None:
            await aclose()

    async def aclose(self) -> None:
        """Stop streaming and close the upstream HTTP response."""
        stream = self._stream
        if stream is not None:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        await self._close_upstream()
        if self.stage not in (TurnStage.COMPLETED, TurnStage.FAILED):
            self.stage = TurnStage.FAILED

    async def events(self) -> AsyncIterator[ChatEvent]:
        """Metadata, then text chunks, then a terminal complete or error event."""
        yield MetadataEvent(articles=self.citations)

        stream = self.stream()
        try:
            async for chunk in stream:
                yield TextEvent(content=chunk)
        except BriefingRAGError as e:
            yield ErrorEvent.from_error(e)
            return
        finally:
            await self.aclose()

        yield CompleteEvent(stats=self.stats)


class ChatOrchestrator:
    """Runs the retrieval-augmented chat pipeline for one turn at a time."""

    def __init__(
        self,
        retriever: HybridRetriever,
        reranker: LLMReranker,
        gateway: LLMGateway,
        store: ArticleStore,
        router: IntentRouter,
        settings: Settings,
    ) -> None:
        self._retriever = retriever
        self._reranker = reranker
        self._gateway = gateway
        self._store = store
        self._router = router
        self._settings = settings

    def _context_limit(self, selector: ModelSelector) -> int:
        if selector.provider is Provider.GEMINI and self._settings.long_context_size:
            return self._settings.long_context_size
        return self._settings.context_size

    @staticmethod
    def _validate(request: ChatRequest) -> str:
        if not request.messages:
            raise InvalidRequest("Message is required")
        last = request.messages[-1]
        if last.role != "user":
            raise InvalidRequest("The last message must come from the user")
        if not last.content.strip():
            raise InvalidRequest("Message is required")
        return last.content

    async def _retrieve(self, turn: ChatTurn, query: str, retrieval_query: str) -> None:
        turn.stage = TurnStage.EMBEDDING
        embedding, embedding_error = await self._retriever.embed_query(
            retrieval_query, routing_tag=CHAT_ROUTING_TAG
        )

        turn.stage = TurnStage.RETRIEVING
        outcome = await self._retriever.search_with_embedding(
            retrieval_query,
            embedding,
            match_count=self._settings.match_count,
            embedding_error=embedding_error,
        )
        turn.degraded = outcome.degraded

        candidates = outcome.candidates
        if not outcome.degraded:
            candidates = [c for c in candidates if c.similarity > self._settings.noise_floor]

        turn.stage = TurnStage.RERANKING
        narrowed = await self._reranker.narrow(
            candidates,
            query,
            model=turn.selector,
            limit=self._context_limit(turn.selector),
        )
        turn.articles = narrowed.kept
        turn.reranked = narrowed.reranked

        turn._log.info(
            "chat_context_ready",
            retrieved=len(outcome.candidates),
            after_noise_floor=len(candidates),
            context=len(turn.articles),
            degraded=outcome.degraded,
            reranked=narrowed.reranked,
            rerank_fallback=narrowed.fallback_reason,
        )

    async def prepare(
        self, request: ChatRequest, request_id: str | None = None
    ) -> ChatTurn:
        """
        Run every stage up to the start of streaming.

        Returns:
            ChatTurn in the READY stage: grounding context fixed, upstream
            response open and its first chunk buffered.

        Raises:
            InvalidRequest: Empty history or a blank final user message.
            RetrievalBackendError: The article store failed.
            QuotaExceeded: The chat model (or a pre-stream call) hit its quota.
            UpstreamError: Missing provider key or another provider failure
                before the first chunk.
        """
        turn = ChatTurn(request_id=request_id or uuid.uuid4().hex[:12])
        try:
            query = self._validate(request)
            turn.selector = ModelSelector.parse(
                request.model, self._settings.default_chat_model_id
            )
            history: list[dict[str, Any]] = [
                {"role": m.role, "content": m.content} for m in request.messages
            ]
            turn._log = turn._log.bind(model=str(turn.selector))

            retrieval_query = query
            if request.is_small_talk_mode:
                turn.intent = RouterIntent.DIRECT
            else:
                routed = await self._router.classify(query, history)
                turn.intent = routed.intent
                retrieval_query = routed.modified_query or query

            use_search = request.use_search
            if turn.intent is RouterIntent.DIRECT:
                use_search = False
            elif turn.intent is RouterIntent.SEARCH_WEB:
                use_search = True

            if turn.intent is RouterIntent.RAG_LOCAL:
                await self._retrieve(turn, query, retrieval_query)
                system_prompt = await load_chat_system_prompt(
                    self._store,
                    self._settings.chat_prompt_key,
                    self._settings.chat_system_prompt,
                )
                messages = build_grounded_messages(
                    system_prompt, history, turn.articles, query
                )
            else:
                messages = build_direct_messages(history)

            turn.citations = build_citations(turn.articles)
            await turn._open_upstream(
                self._gateway.stream_chat(messages, turn.selector, use_search=use_search)
            )
        except BriefingRAGError as e:
            turn._log.warning(
                "chat_turn_failed",
                stage=turn.stage.value,
                error_type=e.kind,
                error=e.message,
            )
            turn.stage = TurnStage.FAILED
            raise

        turn._log.info(
            "chat_turn_prepared",
            intent=turn.intent.value,
            provider=turn.selector.provider.value,
            use_search=use_search,
            articles=len(turn.articles),
        )
        return turn

    async def ask(
        self, request: ChatRequest, request_id: str | None = None
    ) -> AsyncIterator[ChatEvent]:
        """
        Run a turn and yield its events.

        Errors raised before streaming become a single ErrorEvent; errors
        during streaming end the sequence with an ErrorEvent after the
        metadata and any text already sent.
        """
        try:
            turn = await self.prepare(request, request_id=request_id)
        except BriefingRAGError as e:
            yield ErrorEvent.from_error(e)
            return

        events = turn.events()
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            await turn.aclose()


__all__ = [
    "ChatOrchestrator",
    "ChatRequest",
    "ChatTurn",
    "TurnStage",
    "CHAT_ROUTING_TAG",
]
