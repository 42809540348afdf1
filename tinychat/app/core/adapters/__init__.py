############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Model adapter package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Model adapters for upstream LLM providers."""

from tinychat.app.core.adapters.base import (
    AdapterErr,
    AdapterOk,
    AdapterResult,
    DeltaKind,
    ModelAdapter,
    ModelResponse,
    StreamDelta,
    UpstreamError,
)
from tinychat.app.core.adapters.openai_compat import OpenAICompatibleAdapter
from tinychat.app.core.adapters.providers import (
    DeepSeekAdapter,
    MockAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    QwenAdapter,
)
from tinychat.app.core.adapters.registry import AdapterRegistry

__all__ = [
    "AdapterErr",
    "AdapterOk",
    "AdapterRegistry",
    "AdapterResult",
    "DeepSeekAdapter",
    "DeltaKind",
    "MockAdapter",
    "ModelAdapter",
    "ModelResponse",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "OpenRouterAdapter",
    "QwenAdapter",
    "StreamDelta",
    "UpstreamError",
]
