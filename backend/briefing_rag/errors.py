"""
Error taxonomy for the retrieval and chat pipeline.

Every failure the pipeline can produce derives from BriefingRAGError and
carries a stable ``kind`` string plus the HTTP status the transport layer
should use when the error reaches a client.

Recoverable (handled inside the pipeline, logged, never shown to users):
    - EmbeddingUnavailable: retrieval degrades to keyword-only matching
    - RerankFailure: re-ranking falls back to the original ranking

Surfaced (propagate to the transport boundary with their kind preserved):
    - InvalidRequest (400)
    - QuotaExceeded (429)
    - UpstreamError (500)
    - RetrievalBackendError (500)

Usage:
    from briefing_rag.errors import QuotaExceeded, UpstreamError

    try:
        ...
    except QuotaExceeded as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
"""

from __future__ import annotations

from typing import Any


class BriefingRAGError(Exception):
    """Base exception for all pipeline errors."""

    kind: str = "UpstreamError"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses and SSE error events."""
        payload: dict[str, Any] = {
            "detail": self.message,
            "status_code": self.status_code,
            "error_type": self.kind,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# Recoverable Errors
# =============================================================================


class EmbeddingUnavailable(BriefingRAGError):
    """The embedding provider could not produce a vector for the query."""

    kind = "EmbeddingUnavailable"
    status_code = 503


class RerankFailure(BriefingRAGError):
    """The re-rank call failed or returned output that could not be parsed."""

    kind = "ReRankFailure"
    status_code = 500


# =============================================================================
# Surfaced Errors
# =============================================================================


class InvalidRequest(BriefingRAGError):
    """The request cannot be processed as sent (e.g. empty last message)."""

    kind = "InvalidRequest"
    status_code = 400


class QuotaExceeded(BriefingRAGError):
    """An upstream provider rejected the call for rate limit or quota reasons."""

    kind = "QuotaExceeded"
    status_code = 429


class UpstreamError(BriefingRAGError):
    """Any other upstream provider failure."""

    kind = "UpstreamError"
    status_code = 500


class RetrievalBackendError(BriefingRAGError):
    """The article store query failed. There is no fallback for this."""

    kind = "RetrievalBackendError"
    status_code = 500


__all__ = [
    "BriefingRAGError",
    "EmbeddingUnavailable",
    "RerankFailure",
    "InvalidRequest",
    "QuotaExceeded",
    "UpstreamError",
    "RetrievalBackendError",
]
