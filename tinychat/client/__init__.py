############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Python client package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Python client for the TinyChat streaming API."""

from tinychat.client.stream_consumer import (
    CancelToken,
    ChatStreamClient,
    ChatStreamError,
    ConversationView,
    LocalMessage,
    SSEDecoder,
    SSEEvent,
)

__all__ = [
    "CancelToken",
    "ChatStreamClient",
    "ChatStreamError",
    "ConversationView",
    "LocalMessage",
    "SSEDecoder",
    "SSEEvent",
]
