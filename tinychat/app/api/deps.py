############################################################
#
# tinychat - Streaming LLM Chat Service
#
# deps.py: FastAPI dependencies for application-scoped resources
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Dependencies that hand route handlers the objects built at startup."""

from typing import Any, Dict, List

from fastapi import Request
from pydantic import ValidationError

from tinychat.app.core.adapters import AdapterRegistry
from tinychat.app.security.session import Identity, get_identity
from tinychat.app.services.relay import ChatRelay
from tinychat.app.settings import Settings


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_adapter_registry(request: Request) -> AdapterRegistry:
    return request.app.state.registry


def get_chat_relay(request: Request) -> ChatRelay:
    return request.app.state.relay


def get_request_identity(request: Request) -> Identity:
    return get_identity(request, request.app.state.settings)


def validation_details(error: ValidationError) -> List[Dict[str, Any]]:
    """JSON-safe summary of a pydantic validation error."""
    return [
        {"loc": [str(part) for part in e["loc"]], "msg": e["msg"]}
        for e in error.errors()
    ]
