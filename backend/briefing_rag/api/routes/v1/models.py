"""Chat model catalog for the model picker."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from briefing_rag.api.routes.dependencies import get_services
from briefing_rag.llm.models import MODEL_CATALOG, Provider
from briefing_rag.services import Services

router = APIRouter(prefix="/models", tags=["Models"])


class ModelEntry(BaseModel):
    id: str
    name: str
    provider: Provider
    has_search: bool
    quota: str


class ModelCatalogResponse(BaseModel):
    models: list[ModelEntry]
    default_model_id: str
    quota_pools: list[str]


@router.get(
    "",
    response_model=ModelCatalogResponse,
    summary="List chat models (v1)",
)
async def list_models(
    services: Services = Depends(get_services),
) -> ModelCatalogResponse:
    """
    List selectable chat models.

    Any model may be suffixed with ``@<pool>`` to draw from one of
    ``quota_pools``; pool aliases are listed, keys never are.
    """
    return ModelCatalogResponse(
        models=[
            ModelEntry(
                id=info.id,
                name=info.name,
                provider=info.provider,
                has_search=info.has_search,
                quota=info.quota,
            )
            for info in MODEL_CATALOG
        ],
        default_model_id=services.settings.default_chat_model_id,
        quota_pools=services.gateway.pool_aliases,
    )


__all__ = ["router"]
