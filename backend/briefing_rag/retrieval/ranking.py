"""
Qualification and tier ranking for hybrid retrieval.

An article qualifies for a query when either:
    - the raw query is a case-insensitive substring of its title, category
      or any of its keywords (keyword match), or
    - a query embedding exists and cosine similarity exceeds the semantic
      threshold.

Qualified articles are placed in tiers (lower is better):

    1  keyword match
    2  similarity > high_similarity_threshold
    3  similarity in (semantic_threshold, high_similarity_threshold]
    4  safety net, never produced by qualification itself

Results are ordered by tier ascending, then similarity descending. Python's
sort is stable, so equal keys keep their retrieval order.

The Supabase RPC applies the same policy server-side; InMemoryArticleStore
applies it through the functions in this module.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from briefing_rag.config.settings import Settings
from briefing_rag.schemas import Candidate

# =============================================================================
# Constants
# =============================================================================

TIER_KEYWORD = 1
TIER_HIGH_SIMILARITY = 2
TIER_NORMAL_SIMILARITY = 3
TIER_SAFETY_NET = 4


@dataclass(frozen=True)
class RankingPolicy:
    """Similarity thresholds that drive qualification and tiering."""

    semantic_threshold: float = 0.65
    high_similarity_threshold: float = 0.75

    @classmethod
    def from_settings(cls, settings: Settings) -> "RankingPolicy":
        return cls(
            semantic_threshold=settings.semantic_threshold,
            high_similarity_threshold=settings.high_similarity_threshold,
        )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity clamped to [0, 1].

    Zero vectors and length mismatches score 0.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def keyword_match(
    query: str,
    title: str | None,
    category: str | None,
    keywords: Iterable[str] | None,
) -> bool:
    """True when the raw query occurs in the title, category or a keyword."""
    needle = (query or "").strip().lower()
    if not needle:
        return False
    if title and needle in title.lower():
        return True
    if category and needle in category.lower():
        return True
    return any(needle in (keyword or "").lower() for keyword in keywords or ())


def classify_tier(
    is_keyword_match: bool,
    similarity: float,
    has_embedding: bool,
    policy: RankingPolicy,
) -> int | None:
    """
    Tier of a candidate, or None when it does not qualify.

    Without an embedding only keyword matches qualify.
    """
    if is_keyword_match:
        return TIER_KEYWORD
    if not has_embedding:
        return None
    if similarity > policy.high_similarity_threshold:
        return TIER_HIGH_SIMILARITY
    if similarity > policy.semantic_threshold:
        return TIER_NORMAL_SIMILARITY
    return None


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Order by tier ascending then similarity descending (stable)."""
    return sorted(candidates, key=lambda c: (c.match_priority, -c.similarity))


__all__ = [
    "RankingPolicy",
    "cosine_similarity",
    "keyword_match",
    "classify_tier",
    "rank_candidates",
    "TIER_KEYWORD",
    "TIER_HIGH_SIMILARITY",
    "TIER_NORMAL_SIMILARITY",
    "TIER_SAFETY_NET",
]
