#!/usr/bin/env python3
############################################################
#
# tinychat - Streaming LLM Chat Service
#
# seed_dev_data.py: Seed database with development test data
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Seed development data for TinyChat."""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tinychat.app.db import chat_crud, crud
from tinychat.app.db.models import MessageRole
from tinychat.app.db.session import Database
from tinychat.app.settings import get_settings


MODEL_DESCRIPTORS = [
    {
        "name": "Deepseek V3 (OpenRouter)",
        "provider": "openrouter",
        "model_id": "deepseek/deepseek-chat-v3-0324:free",
        "description": "DeepSeek V3 served through OpenRouter (free tier)",
        "icon_url": "/icons/deepseek.svg",
    },
    {
        "name": "DeepSeek R1",
        "provider": "deepseek",
        "model_id": "deepseek-r1",
        "description": "DeepSeek reasoning model with visible thinking",
        "icon_url": "/icons/deepseek.svg",
    },
    {
        "name": "通义千问-QwQ-Plus",
        "provider": "alibaba",
        "model_id": "qwen-qwq-plus",
        "description": "Alibaba Qwen QwQ reasoning model",
        "icon_url": "/icons/qwen.svg",
    },
]

SAMPLE_CONVERSATIONS = [
    {
        "title": "Welcome",
        "model_id": "deepseek/deepseek-chat-v3-0324:free",
        "messages": [
            (MessageRole.USER, "Hello! What can you do?", None),
            (MessageRole.ASSISTANT, "I can answer questions, draft text and explain code.", None),
        ],
    },
    {
        "title": "Arithmetic",
        "model_id": "deepseek-r1",
        "messages": [
            (MessageRole.USER, "What is 2+2?", None),
            (MessageRole.ASSISTANT, "4", "Two plus two is four."),
        ],
    },
]


async def seed_models(db):
    """Create or update the model descriptors."""
    for data in MODEL_DESCRIPTORS:
        descriptor = await crud.upsert_model(db, **data)
        print(f"  Model: {descriptor.name} ({descriptor.provider}/{descriptor.model_id})")


async def seed_conversations(db, user):
    """Create sample conversations for the test user, once."""
    existing = await chat_crud.list_conversations(db, user.id, include_deleted=True)
    if existing:
        print(f"  {len(existing)} conversation(s) already exist, skipping...")
        return

    for data in SAMPLE_CONVERSATIONS:
        model_pk = await crud.resolve_model_pk(db, data["model_id"])
        conv = await chat_crud.create_conversation(
            db, user_id=user.id, title=data["title"], model_pk=model_pk
        )
        for role, content, reasoning in data["messages"]:
            await chat_crud.create_message(
                db, conv.id, role, content,
                reasoning=reasoning,
                model_pk=model_pk if role == MessageRole.ASSISTANT else None,
            )
        print(f"  Created conversation: {conv.title} ({len(data['messages'])} messages)")


async def seed():
    settings = get_settings()
    database = Database.from_settings(settings)
    try:
        await database.create_all()
        async with database.session() as db:
            print("Seeding models...")
            await seed_models(db)

            print("Creating test user...")
            user = await crud.get_or_create_user(
                db, email="test@tinychat.local", name="Test User"
            )
            print(f"  User: {user.email} ({user.id})")

            print("Creating conversations...")
            await seed_conversations(db, user)
            await db.commit()
    finally:
        await database.dispose()


async def main():
    """Main entry point."""
    print("=" * 60)
    print("TinyChat Development Data Seeder")
    print("=" * 60)
    print()

    await seed()

    print()
    print("=" * 60)
    print("Seeding complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
