############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: API router aggregation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API endpoints for TinyChat."""

from fastapi import APIRouter

from tinychat.app.api.chat import router as chat_router
from tinychat.app.api.chats import router as chats_router
from tinychat.app.api.health import router as health_router
from tinychat.app.api.models_api import router as models_router
from tinychat.app.api.usage import router as usage_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(chat_router)
api_router.include_router(chats_router)
api_router.include_router(usage_router)
api_router.include_router(models_router)

__all__ = ["api_router"]
