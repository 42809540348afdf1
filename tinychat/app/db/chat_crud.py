############################################################
#
# tinychat - Streaming LLM Chat Service
#
# chat_crud.py: Database CRUD operations for chat entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database CRUD operations for conversations and messages (the message store)."""

from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tinychat.app.db.base import utcnow
from tinychat.app.db.models import AIModel, Conversation, Message, MessageRole


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

async def create_conversation(
    db: AsyncSession,
    user_id: str,
    title: str = "New Chat",
    model_pk: Optional[str] = None,
) -> Conversation:
    conv = Conversation(user_id=user_id, title=title, model_id=model_pk)
    db.add(conv)
    await db.flush()
    return conv


async def get_conversation(
    db: AsyncSession,
    conversation_id: str,
    include_deleted: bool = True,
) -> Optional[Conversation]:
    """Fetch a conversation by id. Soft-deleted rows are returned unless excluded."""
    stmt = select(Conversation).where(Conversation.id == conversation_id)
    if not include_deleted:
        stmt = stmt.where(Conversation.deleted_at.is_(None))
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_conversation_with_messages(
    db: AsyncSession,
    conversation_id: str,
) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(
            selectinload(Conversation.messages).selectinload(Message.model),
            selectinload(Conversation.model),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_conversations(
    db: AsyncSession,
    user_id: str,
    include_deleted: bool = False,
    limit: Optional[int] = None,
) -> List[Tuple[Conversation, Optional[Message]]]:
    """List a user's conversations, newest activity first, each with its latest message."""
    stmt = (
        select(Conversation)
        .where(Conversation.user_id == user_id)
        .options(selectinload(Conversation.model))
        .order_by(Conversation.updated_at.desc())
    )
    if not include_deleted:
        stmt = stmt.where(Conversation.deleted_at.is_(None))
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    conversations = list(result.scalars().all())

    rows = []
    for conv in conversations:
        preview = await db.execute(
            select(Message)
            .where(Message.conversation_id == conv.id)
            .order_by(Message.created_at.desc())
            .limit(1)
        )
        rows.append((conv, preview.scalar_one_or_none()))
    return rows


async def rename_conversation(
    db: AsyncSession,
    conversation_id: str,
    title: str,
) -> Optional[Conversation]:
    conv = await get_conversation(db, conversation_id)
    if not conv:
        return None
    conv.title = title
    await db.flush()
    return conv


async def soft_delete_conversation(
    db: AsyncSession,
    conversation_id: str,
) -> Optional[Conversation]:
    conv = await get_conversation(db, conversation_id)
    if not conv:
        return None
    if conv.deleted_at is None:
        conv.deleted_at = utcnow()
        await db.flush()
    return conv


async def restore_conversation(
    db: AsyncSession,
    conversation_id: str,
) -> Optional[Conversation]:
    conv = await get_conversation(db, conversation_id)
    if not conv:
        return None
    conv.deleted_at = None
    await db.flush()
    return conv


async def hard_delete_conversation(
    db: AsyncSession,
    conversation_id: str,
) -> bool:
    """Permanently delete a conversation and all of its messages."""
    conv = await get_conversation(db, conversation_id)
    if not conv:
        return False
    await db.execute(delete(Message).where(Message.conversation_id == conversation_id))
    await db.execute(delete(Conversation).where(Conversation.id == conversation_id))
    await db.flush()
    return True


async def purge_deleted_conversations(
    db: AsyncSession,
    older_than_days: int,
) -> int:
    """Hard-delete conversations soft-deleted more than N days ago. Returns count."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    result = await db.execute(
        select(Conversation.id).where(
            Conversation.deleted_at.is_not(None),
            Conversation.deleted_at < cutoff,
        )
    )
    ids = list(result.scalars().all())
    if not ids:
        return 0
    await db.execute(delete(Message).where(Message.conversation_id.in_(ids)))
    await db.execute(delete(Conversation).where(Conversation.id.in_(ids)))
    await db.flush()
    return len(ids)


async def touch_conversation(db: AsyncSession, conversation_id: str) -> None:
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=utcnow())
    )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

async def create_message(
    db: AsyncSession,
    conversation_id: str,
    role: MessageRole,
    content: str,
    reasoning: Optional[str] = None,
    model_pk: Optional[str] = None,
) -> Message:
    """Append a message and bump the conversation's updated_at."""
    msg = Message(
        conversation_id=conversation_id,
        role=MessageRole(role),
        content=content,
        reasoning=reasoning,
        model_id=model_pk,
    )
    db.add(msg)
    await db.flush()
    await touch_conversation(db, conversation_id)
    return msg


async def get_messages(
    db: AsyncSession,
    conversation_id: str,
) -> List[Message]:
    """Messages of a conversation in creation order, each with its model descriptor."""
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .options(selectinload(Message.model))
        .order_by(Message.created_at.asc())
    )
    return list(result.scalars().all())


async def get_message_model(
    db: AsyncSession,
    message_id: str,
) -> Tuple[bool, Optional[AIModel]]:
    """Return (message_exists, descriptor) for a message."""
    result = await db.execute(
        select(Message).where(Message.id == message_id).options(selectinload(Message.model))
    )
    msg = result.scalar_one_or_none()
    if msg is None:
        return False, None
    return True, msg.model


async def get_conversation_model(
    db: AsyncSession,
    conversation_id: str,
) -> Tuple[bool, Optional[AIModel]]:
    """Return (conversation_exists, descriptor) for a conversation."""
    result = await db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(selectinload(Conversation.model))
    )
    conv = result.scalar_one_or_none()
    if conv is None:
        return False, None
    return True, conv.model
