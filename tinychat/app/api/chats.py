############################################################
#
# tinychat - Streaming LLM Chat Service
#
# chats.py: Conversation listing and lookup endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Conversation list/create endpoints and model lookups."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.api.deps import get_app_settings, get_request_identity, validation_details
from tinychat.app.core.schemas import (
    ConversationCreate,
    conversation_to_dict,
    message_to_dict,
    model_to_dict,
)
from tinychat.app.db import chat_crud, crud
from tinychat.app.db.session import get_async_db
from tinychat.app.security.session import Identity
from tinychat.app.settings import Settings

router = APIRouter(prefix="/api", tags=["chats"])


@router.get("/chats")
async def list_chats(
    userId: Optional[str] = None,
    includeDeleted: bool = False,
    db: AsyncSession = Depends(get_async_db),
    identity: Identity = Depends(get_request_identity),
):
    """List a user's conversations, newest first, each with a one-message preview."""
    user_id = userId or identity.user_id
    if not user_id:
        return JSONResponse({"error": "userId is required"}, status_code=400)

    rows = await chat_crud.list_conversations(db, user_id, include_deleted=includeDeleted)
    chats = []
    for conv, preview in rows:
        data = conversation_to_dict(conv, include_model=True)
        data["messages"] = [message_to_dict(preview)] if preview else []
        chats.append(data)
    return {"chats": chats}


@router.post("/chats")
async def create_chat(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    identity: Identity = Depends(get_request_identity),
    settings: Settings = Depends(get_app_settings),
):
    """Create an empty conversation."""
    try:
        body = ConversationCreate.model_validate(await request.json())
    except ValidationError as e:
        return JSONResponse(
            {"error": "Invalid request", "details": validation_details(e)},
            status_code=400,
        )
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    user_id = body.user_id or identity.user_id
    if not user_id:
        return JSONResponse({"error": "userId is required"}, status_code=400)

    await crud.ensure_session_user(db, user_id)
    conv = await chat_crud.create_conversation(
        db,
        user_id=user_id,
        title=(body.title or "").strip() or settings.default_chat_title,
        model_pk=await crud.resolve_model_pk(db, body.model_id),
    )
    await db.commit()
    return {"chat": conversation_to_dict(conv)}


@router.get("/conversations/{conversation_id}/model")
async def get_conversation_model(
    conversation_id: str,
    db: AsyncSession = Depends(get_async_db),
):
    """Model descriptor recorded on a conversation."""
    found, model = await chat_crud.get_conversation_model(db, conversation_id)
    if not found:
        return JSONResponse({"error": "Conversation not found"}, status_code=404)
    return {"model": model_to_dict(model)}


@router.get("/messages/{message_id}/model")
async def get_message_model(
    message_id: str,
    db: AsyncSession = Depends(get_async_db),
):
    """Model descriptor that produced a message, or null."""
    found, model = await chat_crud.get_message_model(db, message_id)
    if not found:
        return JSONResponse({"error": "Message not found"}, status_code=404)
    return {"model": model_to_dict(model)}
