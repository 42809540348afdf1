############################################################
#
# tinychat - Streaming LLM Chat Service
#
# models_api.py: Model descriptor listing endpoint
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Models listing API endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.api.deps import get_adapter_registry, get_app_settings
from tinychat.app.core.adapters import AdapterRegistry
from tinychat.app.core.schemas import model_to_dict
from tinychat.app.db import crud
from tinychat.app.db.session import get_async_db
from tinychat.app.settings import Settings

router = APIRouter(prefix="/api", tags=["models"])


@router.get("/models")
async def list_models(
    db: AsyncSession = Depends(get_async_db),
    registry: AdapterRegistry = Depends(get_adapter_registry),
    settings: Settings = Depends(get_app_settings),
):
    """
    List active model descriptors.

    Each entry reports whether its provider has real credentials; models on
    an unconfigured provider answer with simulated text.
    """
    models = []
    for descriptor in await crud.get_active_models(db):
        data = model_to_dict(descriptor)
        adapter = registry.resolve(descriptor.model_id)
        data["configured"] = bool(getattr(adapter, "is_configured", False))
        models.append(data)
    return {"models": models, "defaultModelId": settings.default_model_id}
