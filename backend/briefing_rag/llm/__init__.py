"""LLM provider clients, model selection and output parsing helpers."""

from briefing_rag.llm.gateway import LLMGateway
from briefing_rag.llm.gemini import GeminiClient
from briefing_rag.llm.models import (
    MODEL_CATALOG,
    ModelSelector,
    Provider,
    QuotaPoolRegistry,
)
from briefing_rag.llm.siliconflow import SiliconFlowClient

__all__ = [
    "LLMGateway",
    "GeminiClient",
    "SiliconFlowClient",
    "ModelSelector",
    "Provider",
    "QuotaPoolRegistry",
    "MODEL_CATALOG",
]
