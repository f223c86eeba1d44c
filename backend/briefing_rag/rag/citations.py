"""Citation bookkeeping for grounded answers."""

from __future__ import annotations

import re
from typing import Iterable

from briefing_rag.schemas import Candidate, Citation

CITATION_MARKER_PATTERN = re.compile(r"\[(\d{1,3})\]")


def build_citations(articles: Iterable[Candidate]) -> list[Citation]:
    """Number the grounding articles 1..N in context order."""
    return [
        Citation(
            index=position,
            id=article.id,
            title=article.title,
            link=article.link,
            published=article.published,
        )
        for position, article in enumerate(articles, start=1)
    ]


def extract_cited_indices(text: str, article_count: int) -> set[int]:
    """
    Unique ``[N]`` markers in ``text`` that refer to a grounding article.

    Markers outside 1..article_count are ignored, so a model citing an
    article that was never in the context is not counted.
    """
    indices = set()
    for match in CITATION_MARKER_PATTERN.finditer(text or ""):
        index = int(match.group(1))
        if 1 <= index <= article_count:
            indices.add(index)
    return indices


__all__ = ["build_citations", "extract_cited_indices", "CITATION_MARKER_PATTERN"]
