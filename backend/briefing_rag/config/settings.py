"""
Pydantic settings for the briefing RAG backend.

This module centralizes environment-driven configuration. It uses Pydantic
Settings v2 with SettingsConfigDict to load environment variables from .env
files and the process environment.

Two environments are supported:
- local: Development, missing provider keys only produce warnings
- production: Deployed service, the article store must be configured

The retrieval tuning values (thresholds, candidate counts) were tuned against
one embedding model. They live here rather than in code so they can be
re-tuned per embedding provider without a release.

Usage:
    from briefing_rag.config.settings import Settings, get_settings, validate_config

    # Get settings singleton (cached)
    settings = get_settings()

    # Validate all configuration on startup
    validate_config()

    print(settings.semantic_threshold)
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from pydantic import (
    AnyHttpUrl,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have defaults suitable for local development. Secrets
    (provider API keys, the store service key) must come from the
    environment or a .env file.

    Attributes are organized into logical groups:
    - Environment Configuration
    - Gemini Configuration
    - Embedding Configuration
    - SiliconFlow Configuration
    - Article Store Configuration
    - Retrieval Tuning
    - Re-rank Configuration
    - Intent Router Configuration
    - Timeout Configuration
    - Application Configuration
    - Logging Configuration
    """

    # =========================================================================
    # Environment Configuration
    # =========================================================================
    environment: str = Field(
        default="local",
        description="Runtime environment identifier: 'local' or 'production'.",
    )

    debug: bool = Field(
        default=True,
        description="Enable debug mode. Set to False in production.",
    )

    # =========================================================================
    # Gemini Configuration
    # =========================================================================
    gemini_api_key: SecretStr | None = Field(
        default=None,
        description="API key of the default Gemini quota pool.",
    )

    gemini_api_key_pools: dict[str, SecretStr] = Field(
        default_factory=dict,
        description=(
            "Additional Gemini quota pools keyed by alias. A model selector "
            "such as 'gemini-2.0-flash@alok' draws from the 'alok' pool. "
            'Provide as JSON, e.g. GEMINI_API_KEY_POOLS=\'{"alok": "..."}\'.'
        ),
    )

    gemini_base_url: AnyHttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the Generative Language REST API.",
    )

    default_chat_model_id: str = Field(
        default="gemini-2.0-flash",
        description="Chat model used when the requested model is missing or unknown.",
    )

    # =========================================================================
    # Embedding Configuration
    # =========================================================================
    embedding_model_id: str = Field(
        default="gemini-embedding-001",
        description="Embedding model used for query and document vectors.",
    )

    embedding_dimension: int = Field(
        default=768,
        ge=1,
        description="Output dimensionality requested from the embedding model.",
    )

    embedding_max_chars: int = Field(
        default=8000,
        ge=100,
        description="Input text is truncated to this many characters before embedding.",
    )

    embedding_routes: dict[str, str] = Field(
        default_factory=lambda: {"ai": "cheng30", "search": "default"},
        description=(
            "Routing tag to quota pool alias. The AI assistant embeds with the "
            "'ai' tag, the plain search box with the 'search' tag."
        ),
    )

    # =========================================================================
    # SiliconFlow Configuration
    # =========================================================================
    siliconflow_api_key: SecretStr | None = Field(
        default=None,
        description="API key for the SiliconFlow OpenAI-compatible endpoint.",
    )

    siliconflow_base_url: AnyHttpUrl = Field(
        default="https://api.siliconflow.cn/v1",
        description="Base URL of the SiliconFlow API.",
    )

    # =========================================================================
    # Article Store Configuration
    # =========================================================================
    supabase_url: AnyHttpUrl | None = Field(
        default=None,
        description="Supabase project URL hosting the articles table and RPCs.",
    )

    supabase_service_key: SecretStr | None = Field(
        default=None,
        description="Supabase service role key used for RPC calls.",
    )

    search_rpc_name: str = Field(
        default="hybrid_search_articles",
        description="Name of the stored procedure implementing hybrid search.",
    )

    config_table: str = Field(
        default="app_config",
        description="Table holding key/value runtime configuration such as prompts.",
    )

    chat_prompt_key: str = Field(
        default="gemini_chat_prompt",
        description="Key of the chat system prompt in the config table.",
    )

    chat_system_prompt: str | None = Field(
        default=None,
        description="Chat system prompt override. When unset it is loaded from the store.",
    )

    # =========================================================================
    # Retrieval Tuning
    # =========================================================================
    semantic_threshold: float = Field(
        default=0.65,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity to qualify a candidate without a keyword match.",
    )

    high_similarity_threshold: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        description="Similarity boundary between tier 2 (high) and tier 3 (normal).",
    )

    match_count: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum candidates retrieved for a chat turn.",
    )

    search_match_count: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum candidates retrieved for the AI search endpoint.",
    )

    search_page_size: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Page size of the AI search endpoint.",
    )

    noise_floor: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Candidates at or below this similarity are dropped before grounding.",
    )

    # =========================================================================
    # Re-rank Configuration
    # =========================================================================
    rerank_trigger_size: int = Field(
        default=10,
        ge=1,
        description="Re-ranking only runs when more candidates than this remain.",
    )

    context_size: int = Field(
        default=10,
        ge=1,
        description="Maximum articles kept in the grounding context after re-ranking.",
    )

    long_context_size: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Optional larger grounding context for Gemini chat models, which "
            "accept far longer prompts. Disabled when unset."
        ),
    )

    rerank_model_id: str = Field(
        default="gemini-2.5-flash-lite-preview-09-2025",
        description="Model used for the re-rank call.",
    )

    rerank_fallback_model_id: str = Field(
        default="gemini-flash-lite-latest",
        description="Model retried once when the re-rank model is out of quota.",
    )

    # =========================================================================
    # Intent Router Configuration
    # =========================================================================
    enable_intent_router: bool = Field(
        default=False,
        description="Classify each turn (DIRECT / RAG_LOCAL / SEARCH_WEB) before retrieval.",
    )

    router_model_id: str = Field(
        default="deepseek-ai/DeepSeek-R1-Distill-Qwen-7B",
        description="Model used by the intent router.",
    )

    # =========================================================================
    # Timeout Configuration
    # =========================================================================
    retrieval_timeout_seconds: float = Field(
        default=10.0,
        ge=0.5,
        le=120.0,
        description="Deadline for embedding, store and re-rank calls (seconds).",
    )

    upstream_timeout_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="HTTP timeout for upstream provider connections (seconds).",
    )

    max_retries: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts for transient network failures on non-streaming calls.",
    )

    # =========================================================================
    # Application Configuration
    # =========================================================================
    backend_host: str = Field(
        default="0.0.0.0",
        description="Host address for the backend server to bind to.",
    )

    backend_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port number for the backend server.",
    )

    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins.",
    )

    rate_limit_per_minute: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum chat/search requests per minute per IP address.",
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL.",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_default=True,
        env_prefix="",
        env_nested_delimiter="__",
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {valid_levels}")
        return upper_v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is either 'local' or 'production'."""
        lower_v = v.lower()
        if lower_v not in {"local", "production"}:
            raise ValueError(
                f"Invalid environment '{v}'. Must be 'local' or 'production'."
            )
        return lower_v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Tier boundaries only make sense when the semantic threshold is lower."""
        if self.semantic_threshold >= self.high_similarity_threshold:
            raise ValueError(
                "semantic_threshold must be lower than high_similarity_threshold "
                f"({self.semantic_threshold} >= {self.high_similarity_threshold})."
            )
        return self

    # =========================================================================
    # Helper Methods
    # =========================================================================
    def get_cors_origins_list(self) -> list[str]:
        """Parse the comma-separated cors_origins string into a list."""
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]

    def is_local(self) -> bool:
        """Check if running in local development environment."""
        return self.environment == "local"

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    def has_article_store(self) -> bool:
        """True when both the Supabase URL and service key are set."""
        return bool(self.supabase_url and self.supabase_service_key)


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    This function is cached to ensure only one Settings instance is created.
    Tests call ``get_settings.cache_clear()`` after changing the environment.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def validate_config(settings: Settings | None = None) -> dict[str, Any]:
    """
    Validate configuration settings on startup.

    Args:
        settings: Settings to validate. Defaults to the cached singleton.

    Returns:
        dict: Validation result with status, warnings and a settings summary.

    Raises:
        ValueError: If critical configuration is missing or invalid.
    """
    warnings: list[str] = []
    errors: list[str] = []

    if settings is None:
        try:
            settings = get_settings()
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}") from e

    if not settings.has_article_store():
        message = (
            "SUPABASE_URL / SUPABASE_SERVICE_KEY not set. "
            "Retrieval will use the empty in-memory article store."
        )
        if settings.is_production():
            errors.append(message)
        else:
            warnings.append(message)

    if not settings.gemini_api_key and not settings.gemini_api_key_pools:
        warnings.append(
            "No Gemini API key configured. Embeddings will be unavailable and "
            "retrieval will run in keyword-only mode."
        )

    if not settings.siliconflow_api_key:
        warnings.append(
            "SILICONFLOW_API_KEY not set. Vendor-qualified models (e.g. 'Qwen/...') "
            "will fail."
        )

    if settings.is_production() and settings.debug:
        warnings.append(
            "DEBUG mode is enabled in production. Consider setting DEBUG=false."
        )

    for warning in warnings:
        logger.warning(f"Configuration warning: {warning}")

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Configuration validation failed: {errors}")

    logger.info(
        f"Configuration validated successfully. Environment: {settings.environment}"
    )

    return {
        "status": "ok",
        "environment": settings.environment,
        "warnings": warnings,
        "settings_summary": {
            "debug": settings.debug,
            "semantic_threshold": settings.semantic_threshold,
            "high_similarity_threshold": settings.high_similarity_threshold,
            "noise_floor": settings.noise_floor,
            "rerank_trigger_size": settings.rerank_trigger_size,
            "context_size": settings.context_size,
            "log_level": settings.log_level,
        },
    }


__all__ = [
    "Settings",
    "get_settings",
    "validate_config",
]
