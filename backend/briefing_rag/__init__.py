"""
Hybrid retrieval-augmented chat backend for an RSS briefing reader.

Packages:
    - config: Environment-driven settings
    - llm: Provider clients, model selection and quota pools
    - retrieval: Embedder, ranking, article stores, hybrid retriever, re-ranker
    - rag: Grounding context, citations, intent router, chat orchestrator
    - api: FastAPI application, middleware and routes
"""

__version__ = "0.3.0"
