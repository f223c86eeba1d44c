"""Chat orchestration: intent routing, grounding prompts, citations and events."""

from briefing_rag.rag.events import (
    ChatEvent,
    CompleteEvent,
    ErrorEvent,
    MetadataEvent,
    TextEvent,
)
from briefing_rag.rag.orchestrator import (
    ChatOrchestrator,
    ChatRequest,
    ChatTurn,
    TurnStage,
)
from briefing_rag.rag.router import IntentRouter, RouterIntent, RouterResult

__all__ = [
    "ChatOrchestrator",
    "ChatRequest",
    "ChatTurn",
    "TurnStage",
    "ChatEvent",
    "MetadataEvent",
    "TextEvent",
    "CompleteEvent",
    "ErrorEvent",
    "IntentRouter",
    "RouterIntent",
    "RouterResult",
]
