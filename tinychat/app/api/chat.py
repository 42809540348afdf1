############################################################
#
# tinychat - Streaming LLM Chat Service
#
# chat.py: Chat turn, conversation and message endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Chat endpoints: streaming turns and single-conversation operations."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.api.deps import (
    get_chat_relay,
    get_request_identity,
    validation_details,
)
from tinychat.app.core.schemas import (
    ChatStreamRequest,
    ConversationPatch,
    MessageCreate,
    conversation_to_dict,
    message_to_dict,
)
from tinychat.app.db import chat_crud, crud
from tinychat.app.db.session import get_async_db
from tinychat.app.logging_config import get_logger
from tinychat.app.security.session import Identity
from tinychat.app.services.relay import ChatRelay, TurnRejected

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


async def _parse_turn(request: Request):
    """Parse a chat turn body. Returns (ChatStreamRequest, None) or (None, error response)."""
    try:
        raw = await request.json()
    except ValueError:
        return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    try:
        body = ChatStreamRequest.model_validate(raw)
    except ValidationError as e:
        return None, JSONResponse(
            {"error": "Invalid request", "details": validation_details(e)},
            status_code=400,
        )
    if body.last_user_message() is None:
        return None, JSONResponse(
            {"error": "messages must include a user message"}, status_code=400
        )
    return body, None


@router.post("/chat/stream")
async def chat_stream(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    relay: ChatRelay = Depends(get_chat_relay),
    identity: Identity = Depends(get_request_identity),
):
    """Run one chat turn and relay the model output as Server-Sent Events."""
    body, error = await _parse_turn(request)
    if error is not None:
        return error

    try:
        turn = await relay.prepare(db, body, identity)
    except TurnRejected as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)

    return StreamingResponse(
        relay.stream(turn),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Chat-Id": turn.conversation_id,
        },
    )


@router.post("/chat")
async def chat_complete(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    relay: ChatRelay = Depends(get_chat_relay),
    identity: Identity = Depends(get_request_identity),
):
    """Non-streaming chat turn: returns the assistant reply in one response."""
    body, error = await _parse_turn(request)
    if error is not None:
        return error

    try:
        turn = await relay.prepare(db, body, identity)
    except TurnRejected as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)

    message = await relay.complete(turn)
    if message is None:
        return JSONResponse({"error": "Failed to save assistant message"}, status_code=500)

    result = {
        "message": message.content,
        "conversationId": turn.conversation_id,
        "record": message_to_dict(message),
    }
    if turn.temp_id:
        result["tempId"] = turn.temp_id
    return result


@router.get("/chat/{chat_id}")
async def get_chat(chat_id: str, db: AsyncSession = Depends(get_async_db)):
    """Conversation with its ordered messages. Soft-deleted conversations are included."""
    conv = await chat_crud.get_conversation_with_messages(db, chat_id)
    if not conv:
        return JSONResponse({"error": "Chat not found"}, status_code=404)
    return {"conversation": conversation_to_dict(conv, conv.messages, include_model=True)}


@router.delete("/chat/{chat_id}")
async def delete_chat(
    chat_id: str,
    permanent: bool = False,
    db: AsyncSession = Depends(get_async_db),
):
    """Soft-delete a conversation, or hard-delete it with ``?permanent=true``."""
    if permanent:
        deleted = await chat_crud.hard_delete_conversation(db, chat_id)
    else:
        deleted = await chat_crud.soft_delete_conversation(db, chat_id) is not None
    if not deleted:
        return JSONResponse({"error": "Chat not found"}, status_code=404)
    await db.commit()
    logger.info("conversation_deleted", chat_id=chat_id, permanent=permanent)
    return {"success": True}


@router.patch("/chat/{chat_id}")
async def patch_chat(
    chat_id: str,
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """Restore a soft-deleted conversation or rename it."""
    try:
        patch = ConversationPatch.model_validate(await request.json())
    except ValueError:
        return JSONResponse({"error": "Invalid action"}, status_code=400)

    if patch.action == "restore":
        conv = await chat_crud.restore_conversation(db, chat_id)
    elif patch.title is not None:
        conv = await chat_crud.rename_conversation(db, chat_id, patch.title.strip())
    else:
        return JSONResponse({"error": "Invalid action"}, status_code=400)

    if not conv:
        return JSONResponse({"error": "Chat not found"}, status_code=404)
    await db.commit()
    return {"success": True, "conversation": conversation_to_dict(conv)}


@router.get("/chat/{chat_id}/messages")
async def list_chat_messages(chat_id: str, db: AsyncSession = Depends(get_async_db)):
    """Ordered messages of a conversation, each with its model descriptor or null."""
    conv = await chat_crud.get_conversation(db, chat_id)
    if not conv:
        return JSONResponse({"error": "Chat not found"}, status_code=404)
    messages = await chat_crud.get_messages(db, chat_id)
    return {"messages": [message_to_dict(m, include_model=True) for m in messages]}


@router.post("/chat/{chat_id}/messages")
async def add_chat_message(
    chat_id: str,
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """Save a single message. Chat turns already persist both sides; kept for older clients."""
    try:
        body = MessageCreate.model_validate(await request.json())
    except ValidationError as e:
        return JSONResponse(
            {"error": "Invalid request", "details": validation_details(e)},
            status_code=400,
        )
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    conv = await chat_crud.get_conversation(db, chat_id)
    if not conv:
        return JSONResponse({"error": "Chat not found"}, status_code=404)

    model_pk: Optional[str] = await crud.resolve_model_pk(db, body.model_id)
    msg = await chat_crud.create_message(
        db, chat_id, body.role, body.content,
        reasoning=body.reasoning, model_pk=model_pk,
    )
    await db.commit()
    return {"message": message_to_dict(msg)}
