############################################################
#
# tinychat - Streaming LLM Chat Service
#
# conftest.py: Pytest configuration and shared test fixtures
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pytest configuration and shared fixtures for TinyChat tests."""

import json
from typing import AsyncGenerator, Callable, List

import httpx
import pytest
import pytest_asyncio

from tinychat.app.core.adapters import AdapterRegistry, MockAdapter
from tinychat.app.db import crud
from tinychat.app.db.session import Database
from tinychat.app.main import attach_resources, create_app
from tinychat.app.services.relay import ChatRelay
from tinychat.app.settings import Settings

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings bound to a throwaway SQLite file, with no provider credentials."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/tinychat-test.db",
        secret_key="test-secret-key",
        openai_api_key=None,
        deepseek_api_key=None,
        dashscope_api_key=None,
        openrouter_api_key=None,
        default_model_id="mock-model",
        log_format="console",
    )


@pytest_asyncio.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    db = Database(settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database):
    async with database.session() as session:
        yield session


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter(chunk_size=4)


@pytest.fixture
def registry(mock_adapter) -> AdapterRegistry:
    """Registry where every model id resolves to the mock adapter."""
    registry = AdapterRegistry(fallback=mock_adapter)
    registry.register_provider(mock_adapter)
    registry.register("mock-model", mock_adapter)
    return registry


@pytest.fixture
def relay(database, registry, settings) -> ChatRelay:
    return ChatRelay(database, registry, settings)


@pytest.fixture
def app(settings, database, registry):
    # ASGITransport does not run the lifespan; attach resources directly
    application = create_app(settings)
    attach_resources(application, database, registry)
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest_asyncio.fixture
async def seeded_model(database):
    """One model descriptor served by the mock adapter."""
    async with database.session() as session:
        descriptor = await crud.upsert_model(
            session,
            model_id="mock-model",
            name="Mock Model",
            provider="mock",
            description="Echoes the prompt",
        )
        await session.commit()
    return descriptor


@pytest.fixture
def sample_chat_messages():
    """Sample chat messages for testing."""
    return [
        {"role": "system", "content": "You are a helpful assistant."},
        {"role": "user", "content": "Hello, how are you?"},
        {"role": "assistant", "content": "I'm doing well, thank you!"},
        {"role": "user", "content": "What is 2+2?"},
    ]


def parse_sse(body: str) -> List[dict]:
    """Split an SSE body into ``{"event", "data"}`` dicts."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event = {"event": "message", "data": ""}
        for line in block.split("\n"):
            if line.startswith("event: "):
                event["event"] = line[len("event: "):]
            elif line.startswith("data: "):
                event["data"] = line[len("data: "):]
        events.append(event)
    return events


def fragments(events: List[dict], prefix: str = "0") -> List[str]:
    """Decoded fragment texts with the given channel prefix."""
    texts = []
    for event in events:
        if event["event"] == "message" and event["data"].startswith(prefix + ":"):
            texts.append(json.loads(event["data"][len(prefix) + 1:]))
    return texts


def completion(events: List[dict]):
    for event in events:
        if event["event"] == "message_complete":
            return json.loads(event["data"])
    return None


@pytest.fixture
def sse() -> Callable:
    """SSE parsing helpers for tests."""
    class _SSE:
        parse = staticmethod(parse_sse)
        fragments = staticmethod(fragments)
        completion = staticmethod(completion)
    return _SSE
