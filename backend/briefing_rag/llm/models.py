"""
Model selection and quota pool resolution.

Clients ask for a model with a selector string that may carry a quota pool
alias, e.g. ``gemini-2.0-flash@alok``. The same logical model can then be
served from several upstream accounts. Parsing happens once at the
orchestration boundary; the rest of the pipeline only sees ModelSelector.

Provider detection:
    - ids starting with ``gemini-`` or ``gemma-`` → Gemini
    - vendor-qualified ids (``Qwen/Qwen3-14B``) → SiliconFlow
    - anything else is replaced by the configured default model

Usage:
    from briefing_rag.llm.models import ModelSelector, QuotaPoolRegistry

    selector = ModelSelector.parse("gemini-2.0-flash@alok")
    credential = registry.resolve(selector.pool)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import structlog
from pydantic import SecretStr

from briefing_rag.errors import UpstreamError

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_MODEL_ID = "gemini-2.0-flash"
DEFAULT_POOL = "default"
POOL_SEPARATOR = "@"

# Retired or mislabelled ids still sent by older clients
LEGACY_MODEL_ALIASES: dict[str, str] = {
    "gemini-3-flash": "gemini-2.0-flash",
}

GEMINI_PREFIXES = ("gemini-", "gemma-")

# SiliconFlow models that reject the tools parameter
TOOLLESS_MODELS = frozenset({"THUDM/glm-4-9b-chat"})

# Models that emit chain-of-thought before the answer, sometimes without
# the opening <think> tag
REASONING_MODEL_MARKERS = ("deepseek-r1", "qwq")


class Provider(str, Enum):
    """Upstream LLM provider."""

    GEMINI = "gemini"
    SILICONFLOW = "siliconflow"


# =============================================================================
# Model Selector
# =============================================================================


@dataclass(frozen=True)
class ModelSelector:
    """Logical model id plus an optional quota pool alias."""

    model_id: str
    pool: str | None = None

    @classmethod
    def parse(
        cls,
        raw: str | None,
        default_model_id: str = DEFAULT_MODEL_ID,
    ) -> "ModelSelector":
        """
        Parse a ``model-id[@alias]`` string.

        Args:
            raw: Selector string from the client. Empty or None selects the
                default model.
            default_model_id: Model used when the id is missing or unknown.

        Returns:
            Normalized ModelSelector.
        """
        text = (raw or "").strip() or default_model_id
        model_id, _, pool = text.partition(POOL_SEPARATOR)
        model_id = model_id.strip()
        pool = pool.strip() or None

        model_id = LEGACY_MODEL_ALIASES.get(model_id, model_id)

        if not model_id.startswith(GEMINI_PREFIXES) and "/" not in model_id:
            logger.debug(
                "model_id_replaced_with_default",
                requested=model_id,
                default=default_model_id,
            )
            model_id = default_model_id

        return cls(model_id=model_id, pool=pool)

    @property
    def provider(self) -> Provider:
        if "/" in self.model_id:
            return Provider.SILICONFLOW
        return Provider.GEMINI

    @property
    def supports_tools(self) -> bool:
        return self.model_id not in TOOLLESS_MODELS

    @property
    def is_reasoning_model(self) -> bool:
        lowered = self.model_id.lower()
        return any(marker in lowered for marker in REASONING_MODEL_MARKERS)

    def with_model(self, model_id: str) -> "ModelSelector":
        """Same pool, different model (used for re-rank and router calls)."""
        return ModelSelector(model_id=model_id, pool=self.pool)

    def __str__(self) -> str:
        if self.pool:
            return f"{self.model_id}{POOL_SEPARATOR}{self.pool}"
        return self.model_id


# =============================================================================
# Quota Pools
# =============================================================================


@dataclass(frozen=True)
class ApiCredential:
    """Resolved key for one quota pool. The key never appears in repr."""

    name: str
    key: str = field(repr=False)


class QuotaPoolRegistry:
    """
    Lookup table from pool alias to API key.

    Unknown or unconfigured aliases fall back to the default pool so a stale
    alias in a client never hard-fails a request that the default key could
    serve.

    Example:
        registry = QuotaPoolRegistry(
            default_key=SecretStr("k0"),
            pools={"alok": SecretStr("k1")},
        )
        registry.resolve("alok").name  # "alok"
        registry.resolve(None).name    # "default"
    """

    def __init__(
        self,
        default_key: SecretStr | None,
        pools: dict[str, SecretStr] | None = None,
    ) -> None:
        self._default_key = default_key
        self._pools = {alias.lower(): key for alias, key in (pools or {}).items()}

    @property
    def aliases(self) -> list[str]:
        return sorted(self._pools)

    def resolve(self, alias: str | None) -> ApiCredential:
        """
        Resolve a pool alias to a credential.

        Raises:
            UpstreamError: If neither the alias nor the default pool has a key.
        """
        if alias and alias.lower() != DEFAULT_POOL:
            key = self._pools.get(alias.lower())
            if key is not None and key.get_secret_value():
                return ApiCredential(name=alias.lower(), key=key.get_secret_value())
            logger.warning("quota_pool_unknown_using_default", pool=alias)

        if self._default_key is not None and self._default_key.get_secret_value():
            return ApiCredential(
                name=DEFAULT_POOL, key=self._default_key.get_secret_value()
            )

        raise UpstreamError(
            f"API key for quota pool '{alias or DEFAULT_POOL}' is not configured."
        )


# =============================================================================
# Model Catalog
# =============================================================================


@dataclass(frozen=True)
class ModelInfo:
    """Entry of the model picker catalog."""

    id: str
    name: str
    provider: Provider
    has_search: bool
    quota: str


MODEL_CATALOG: tuple[ModelInfo, ...] = (
    ModelInfo("deepseek-ai/DeepSeek-R1-Distill-Qwen-7B", "DS-R1-Distill-7B (Free)", Provider.SILICONFLOW, False, "Free"),
    ModelInfo("THUDM/glm-4-9b-chat", "GLM-4-9B (Free)", Provider.SILICONFLOW, False, "Free"),
    ModelInfo("deepseek-ai/DeepSeek-R1-Distill-Qwen-14B", "DS-R1-Distill-14B", Provider.SILICONFLOW, False, "¥0.7/M"),
    ModelInfo("deepseek-ai/DeepSeek-R1-Distill-Qwen-32B", "DS-R1-Distill-32B", Provider.SILICONFLOW, False, "¥1.26/M"),
    ModelInfo("Qwen/Qwen3-14B", "Qwen3-14B", Provider.SILICONFLOW, False, "¥2.0/M"),
    ModelInfo("Qwen/Qwen3-30B-A3B-Instruct", "Qwen3-30B-A3B", Provider.SILICONFLOW, False, "¥2.8/M"),
    ModelInfo("deepseek-ai/DeepSeek-V3.2", "DeepSeek-V3.2", Provider.SILICONFLOW, False, "¥3.0/M"),
    ModelInfo("gemini-2.5-flash-lite-preview-09-2025", "Gemini 2.5 Flash-Lite (Sep)", Provider.GEMINI, True, "15 RPM / 100 RPD"),
    ModelInfo("gemini-flash-lite-latest", "Gemini Flash-Lite (Latest)", Provider.GEMINI, True, "15 RPM / 100 RPD"),
    ModelInfo("gemini-2.5-flash-lite", "Gemini 2.5 Flash-Lite", Provider.GEMINI, True, "15 RPM"),
    ModelInfo("gemini-2.0-flash", "Gemini 2.0 Flash", Provider.GEMINI, True, "1500 RPM / 20 RPD"),
    ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", Provider.GEMINI, True, "2 RPM / 50 RPD"),
)


__all__ = [
    "Provider",
    "ModelSelector",
    "ApiCredential",
    "QuotaPoolRegistry",
    "ModelInfo",
    "MODEL_CATALOG",
    "DEFAULT_MODEL_ID",
    "LEGACY_MODEL_ALIASES",
]
