"""
Shared data models for the retrieval and chat pipeline.

- ChatMessage: one conversation turn
- Candidate: a scored article reference produced by retrieval
- Citation: maps an inline [N] marker to a Candidate

Candidate accepts the column names returned by the article store RPC
(``sourceName``, ``marketTake``) as aliases so store rows validate directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Tier used when the store does not report one
FALLBACK_MATCH_PRIORITY = 4


class ChatMessage(BaseModel):
    """A single conversation turn."""

    role: str = Field(..., min_length=1, description="user, assistant, model or system")
    content: str = Field(default="")

    @field_validator("role")
    @classmethod
    def normalize_role(cls, value: str) -> str:
        return value.strip().lower()


class Candidate(BaseModel):
    """An article scored and tiered by the retriever."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    title: str = ""
    similarity: float = 0.0
    match_priority: int = FALLBACK_MATCH_PRIORITY
    link: str | None = None
    published: datetime | None = None
    source_name: str | None = Field(default=None, alias="sourceName")
    category: str | None = None
    keywords: list[str] = Field(default_factory=list)
    verdict: dict[str, Any] | None = None
    tldr: str | None = None
    summary: str | None = None
    highlights: str | None = None
    critiques: str | None = None
    market_take: str | None = Field(default=None, alias="marketTake")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("title", mode="before")
    @classmethod
    def coerce_title(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("similarity", mode="before")
    @classmethod
    def coerce_similarity(cls, value: Any) -> float:
        return 0.0 if value is None else float(value)

    @field_validator("match_priority", mode="before")
    @classmethod
    def coerce_priority(cls, value: Any) -> int:
        return FALLBACK_MATCH_PRIORITY if value is None else int(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def coerce_keywords(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item is not None]


class Citation(BaseModel):
    """Metadata the client needs to render an inline [index] reference."""

    index: int = Field(..., ge=1)
    id: str
    title: str
    link: str | None = None
    published: datetime | None = None


__all__ = [
    "ChatMessage",
    "Candidate",
    "Citation",
    "FALLBACK_MATCH_PRIORITY",
]
