"""
Events emitted by a chat turn.

A turn produces, in order:
    1. one MetadataEvent with the citation list (may be empty)
    2. zero or more TextEvent chunks
    3. exactly one terminal event: CompleteEvent or ErrorEvent

Each event serializes to one server-sent event frame:

    data: {"type": "text", "content": "..."}\\n\\n
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, Field

from briefing_rag.errors import BriefingRAGError
from briefing_rag.schemas import Citation


class _SSEEvent(BaseModel):
    def to_sse(self) -> str:
        return f"data: {self.model_dump_json()}\n\n"


class MetadataEvent(_SSEEvent):
    """Articles the answer may cite, in [N] order."""

    type: Literal["metadata"] = "metadata"
    articles: list[Citation] = Field(default_factory=list)


class TextEvent(_SSEEvent):
    type: Literal["text"] = "text"
    content: str


class CitationStats(BaseModel):
    retrieved: int = 0
    cited: int = 0


class CompleteEvent(_SSEEvent):
    type: Literal["complete"] = "complete"
    stats: CitationStats = Field(default_factory=CitationStats)


class ErrorEvent(_SSEEvent):
    """Terminal failure. Mirrors the JSON error body of the HTTP layer."""

    type: Literal["error"] = "error"
    detail: str
    status_code: int
    error_type: str

    @classmethod
    def from_error(cls, error: BriefingRAGError) -> "ErrorEvent":
        return cls(
            detail=error.message,
            status_code=error.status_code,
            error_type=error.kind,
        )


ChatEvent = Union[MetadataEvent, TextEvent, CompleteEvent, ErrorEvent]


__all__ = [
    "ChatEvent",
    "MetadataEvent",
    "TextEvent",
    "CompleteEvent",
    "ErrorEvent",
    "CitationStats",
]
