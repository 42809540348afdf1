############################################################
#
# tinychat - Streaming LLM Chat Service
#
# schemas.py: Request bodies and JSON serializers for the chat API
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request/response schemas for the chat API.

Incoming bodies use the camelCase keys of the web client (``chatId``,
``modelId``, ``tempId``); responses are plain dicts with the same casing.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tinychat.app.db.base import isoformat
from tinychat.app.db.models import AIModel, Conversation, Message, MessageRole


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class ChatMessageIn(_CamelModel):
    """One message of the conversation sent with a chat turn."""
    role: MessageRole
    content: str


class ChatStreamRequest(_CamelModel):
    """Body of ``POST /api/chat/stream``."""
    messages: List[ChatMessageIn] = Field(min_length=1)
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    model_id: Optional[str] = Field(default=None, alias="modelId")
    temp_id: Optional[str] = Field(default=None, alias="tempId")

    def last_user_message(self) -> Optional[ChatMessageIn]:
        for message in reversed(self.messages):
            if message.role == MessageRole.USER:
                return message
        return None

    def first_user_message(self) -> Optional[ChatMessageIn]:
        for message in self.messages:
            if message.role == MessageRole.USER:
                return message
        return None


class ConversationCreate(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    title: Optional[str] = None
    model_id: Optional[str] = Field(default=None, alias="modelId")


class ConversationPatch(_CamelModel):
    action: Optional[Literal["restore"]] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)


class MessageCreate(_CamelModel):
    role: MessageRole
    content: str
    reasoning: Optional[str] = None
    model_id: Optional[str] = Field(default=None, alias="modelId")


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def model_to_dict(model: Optional[AIModel]) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return {
        "id": model.id,
        "name": model.name,
        "provider": model.provider,
        "modelId": model.model_id,
        "description": model.description,
        "iconUrl": model.icon_url,
        "isActive": model.is_active,
    }


def message_to_dict(msg: Message, include_model: bool = False) -> Dict[str, Any]:
    data = {
        "id": msg.id,
        "conversationId": msg.conversation_id,
        "role": msg.role.value,
        "content": msg.content,
        "reasoning": msg.reasoning,
        "modelId": msg.model_id,
        "createdAt": isoformat(msg.created_at),
    }
    if include_model:
        data["model"] = model_to_dict(msg.model)
    return data


def conversation_to_dict(
    conv: Conversation,
    messages: Optional[List[Message]] = None,
    include_model: bool = False,
) -> Dict[str, Any]:
    data = {
        "id": conv.id,
        "userId": conv.user_id,
        "title": conv.title,
        "modelId": conv.model_id,
        "createdAt": isoformat(conv.created_at),
        "updatedAt": isoformat(conv.updated_at),
        "deletedAt": isoformat(conv.deleted_at),
    }
    if include_model:
        data["model"] = model_to_dict(conv.model)
    if messages is not None:
        data["messages"] = [message_to_dict(m, include_model=include_model) for m in messages]
    return data
