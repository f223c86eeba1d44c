"""
API package for the briefing RAG backend.

Package Structure:
    - main.py: FastAPI application factory and configuration
    - routes/: API endpoint route definitions
        - health.py: Health check with article store and provider status
        - v1/: Version 1 API endpoints
            - chat.py: Streaming grounded chat (SSE)
            - search.py: AI search over the article store
            - models.py: Chat model catalog
    - middleware/: Logging configuration and rate limiting

Usage:
    from briefing_rag.api import create_app

    app = create_app()

    # Run with uvicorn
    # uvicorn briefing_rag.api.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from briefing_rag import __version__

__api_version__ = "v1"

# Import app and factory function from main module
from briefing_rag.api.main import app, create_app

__all__ = [
    "__version__",
    "__api_version__",
    "app",
    "create_app",
]
