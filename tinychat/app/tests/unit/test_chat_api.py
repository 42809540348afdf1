"""HTTP API tests.

Exercise the FastAPI app through httpx.ASGITransport with the mock
adapter and a SQLite database.
"""

import httpx
import pytest

from tinychat.app.core.adapters import QwenAdapter
from tinychat.app.db import chat_crud, crud
from tinychat.app.db.models import MessageRole
from tinychat.app.security.session import create_session_token

GUEST_HEADERS = {"X-Forwarded-For": "198.51.100.20"}


def _turn(content="hi", **extra):
    return {"messages": [{"role": "user", "content": content}], **extra}


async def _stream_turn(client, app, body, headers=GUEST_HEADERS):
    response = await client.post("/api/chat/stream", json=body, headers=headers)
    # Background completion finishes before assertions on the store
    await app.state.relay.drain()
    return response


async def _new_chat(client, app, sse, content="hi"):
    response = await _stream_turn(client, app, _turn(content))
    return sse.completion(sse.parse(response.text))["chatId"]


class TestChatStream:
    """POST /api/chat/stream"""

    @pytest.mark.asyncio
    async def test_first_turn(self, client, app, sse, database):
        response = await _stream_turn(client, app, _turn("hi", tempId="tmp-1"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        chat_id = response.headers["x-chat-id"]

        events = sse.parse(response.text)
        text = "".join(sse.fragments(events))
        assert text == 'Simulated response to "hi" from mock-model.'
        record = sse.completion(events)
        assert record["tempId"] == "tmp-1"
        assert record["chatId"] == chat_id
        assert record["content"] == text

        async with database.session() as db:
            conv = await chat_crud.get_conversation(db, chat_id)
            assert conv.title == "hi"
            messages = await chat_crud.get_messages(db, chat_id)
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "hi"),
            (MessageRole.ASSISTANT, text),
        ]

    @pytest.mark.asyncio
    async def test_completion_without_temp_id(self, client, app, sse):
        response = await _stream_turn(client, app, _turn())
        assert "tempId" not in sse.completion(sse.parse(response.text))

    @pytest.mark.asyncio
    async def test_follow_up_turn_reuses_chat(self, client, app, sse, database):
        chat_id = await _new_chat(client, app, sse)
        body = {
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "user", "content": "and again"},
            ],
            "chatId": chat_id,
        }
        response = await _stream_turn(client, app, body)

        assert response.headers["x-chat-id"] == chat_id
        async with database.session() as db:
            messages = await chat_crud.get_messages(db, chat_id)
        assert [m.content for m in messages][2] == "and again"
        assert len(messages) == 4

    @pytest.mark.asyncio
    async def test_empty_messages_rejected_without_side_effects(self, client, database):
        response = await client.post("/api/chat/stream", json={"messages": []}, headers=GUEST_HEADERS)

        assert response.status_code == 400
        assert "error" in response.json()
        async with database.session() as db:
            assert await crud.get_usage_count(db, ip_address="198.51.100.20") == 0

    @pytest.mark.asyncio
    async def test_invalid_json_rejected(self, client):
        response = await client.post(
            "/api/chat/stream",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_chat(self, client):
        response = await client.post(
            "/api/chat/stream", json=_turn(chatId="missing"), headers=GUEST_HEADERS
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Chat not found"}

    @pytest.mark.asyncio
    async def test_usage_limit(self, client, app, settings):
        settings.usage_limit_guest = 2
        for _ in range(2):
            ok = await _stream_turn(client, app, _turn())
            assert ok.status_code == 200

        response = await client.post("/api/chat/stream", json=_turn(), headers=GUEST_HEADERS)

        assert response.status_code == 429
        usage = await client.get("/api/usage", headers=GUEST_HEADERS)
        assert usage.json() == {"count": 2, "limit": 2, "isLimitReached": True}

    @pytest.mark.asyncio
    async def test_session_cookie_identity(self, client, app, sse, settings, database):
        token = create_session_token("user-42", settings)
        headers = {"Cookie": f"{settings.session_cookie_name}={token}"}

        response = await _stream_turn(client, app, _turn(), headers=headers)
        chat_id = response.headers["x-chat-id"]

        async with database.session() as db:
            conv = await chat_crud.get_conversation(db, chat_id)
            assert conv.user_id == "user-42"
            assert await crud.get_usage_count(db, user_id="user-42") == 1

        listing = await client.get("/api/chats", headers=headers)
        assert [c["id"] for c in listing.json()["chats"]] == [chat_id]


class TestChatComplete:
    """POST /api/chat"""

    @pytest.mark.asyncio
    async def test_non_streaming_turn(self, client):
        response = await client.post("/api/chat", json=_turn("hi", tempId="tmp-9"), headers=GUEST_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == 'Simulated response to "hi" from mock-model.'
        assert data["tempId"] == "tmp-9"
        assert data["record"]["role"] == "assistant"
        assert data["record"]["conversationId"] == data["conversationId"]

    @pytest.mark.asyncio
    async def test_malformed_upstream_body_saves_stand_in(self, client, registry, database):
        def handler(request):
            return httpx.Response(200, content=b'data: {"choices":[{"delta":"oops"}]}\n\n')

        qwen = QwenAdapter(
            "sk-real",
            "https://dashscope.test/v1",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        registry.register("qwen-qwq-plus", qwen)

        response = await client.post(
            "/api/chat", json=_turn(modelId="qwen-qwq-plus"), headers=GUEST_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"].startswith("[alibaba] The model request failed:")
        assert "malformed" in data["message"]
        async with database.session() as db:
            messages = await chat_crud.get_messages(db, data["conversationId"])
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]


class TestConversationEndpoints:
    """Conversation reads, soft delete and restore."""

    @pytest.mark.asyncio
    async def test_get_chat(self, client, app, sse):
        chat_id = await _new_chat(client, app, sse)

        response = await client.get(f"/api/chat/{chat_id}")

        conv = response.json()["conversation"]
        assert conv["id"] == chat_id
        assert [m["role"] for m in conv["messages"]] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_get_missing_chat(self, client):
        response = await client.get("/api/chat/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_soft_delete_and_restore(self, client, app, sse, settings):
        chat_id = await _new_chat(client, app, sse)
        async with app.state.database.session() as db:
            user = await crud.get_user_by_email(db, settings.default_user_email)

        deleted = await client.delete(f"/api/chat/{chat_id}")
        assert deleted.json() == {"success": True}

        listing = await client.get("/api/chats", params={"userId": user.id})
        assert listing.json()["chats"] == []
        with_deleted = await client.get(
            "/api/chats", params={"userId": user.id, "includeDeleted": "true"}
        )
        chats = with_deleted.json()["chats"]
        assert [c["id"] for c in chats] == [chat_id]
        assert chats[0]["deletedAt"] is not None

        # Soft-deleted chats stay readable by id
        direct = await client.get(f"/api/chat/{chat_id}")
        assert direct.status_code == 200

        restored = await client.patch(f"/api/chat/{chat_id}", json={"action": "restore"})
        assert restored.json()["success"] is True
        assert restored.json()["conversation"]["deletedAt"] is None

        listing = await client.get("/api/chats", params={"userId": user.id})
        chats = listing.json()["chats"]
        assert [c["id"] for c in chats] == [chat_id]
        assert chats[0]["messages"][0]["role"] == "assistant"

    @pytest.mark.asyncio
    async def test_permanent_delete(self, client, app, sse):
        chat_id = await _new_chat(client, app, sse)

        response = await client.delete(f"/api/chat/{chat_id}", params={"permanent": "true"})

        assert response.json() == {"success": True}
        assert (await client.get(f"/api/chat/{chat_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_missing(self, client):
        assert (await client.delete("/api/chat/missing")).status_code == 404

    @pytest.mark.asyncio
    async def test_patch_invalid_action(self, client, app, sse):
        chat_id = await _new_chat(client, app, sse)
        response = await client.patch(f"/api/chat/{chat_id}", json={"action": "explode"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_rename(self, client, app, sse):
        chat_id = await _new_chat(client, app, sse)
        response = await client.patch(f"/api/chat/{chat_id}", json={"title": "  Renamed  "})
        assert response.json()["conversation"]["title"] == "Renamed"

    @pytest.mark.asyncio
    async def test_list_requires_user(self, client):
        response = await client.get("/api/chats")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_create_chat(self, client, seeded_model):
        response = await client.post(
            "/api/chats", json={"userId": "user-7", "title": "Plans", "modelId": "mock-model"}
        )
        chat = response.json()["chat"]
        assert chat["title"] == "Plans"
        assert chat["userId"] == "user-7"
        assert chat["modelId"] == seeded_model.id


class TestMessageEndpoints:
    """Message listing and model lookups."""

    @pytest.mark.asyncio
    async def test_messages_with_model(self, client, app, sse, seeded_model):
        response = await _stream_turn(client, app, _turn(modelId="mock-model"))
        chat_id = response.headers["x-chat-id"]

        listing = await client.get(f"/api/chat/{chat_id}/messages")

        messages = listing.json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[0]["model"] is None
        assert messages[1]["model"]["name"] == "Mock Model"

        assistant_id = messages[1]["id"]
        model = await client.get(f"/api/messages/{assistant_id}/model")
        assert model.json()["model"]["modelId"] == "mock-model"
        conv_model = await client.get(f"/api/conversations/{chat_id}/model")
        assert conv_model.json()["model"]["id"] == seeded_model.id

    @pytest.mark.asyncio
    async def test_model_lookups_missing(self, client):
        assert (await client.get("/api/messages/missing/model")).status_code == 404
        assert (await client.get("/api/conversations/missing/model")).status_code == 404

    @pytest.mark.asyncio
    async def test_add_message(self, client, app, sse):
        chat_id = await _new_chat(client, app, sse)
        response = await client.post(
            f"/api/chat/{chat_id}/messages",
            json={"role": "assistant", "content": "saved later", "reasoning": "why"},
        )
        assert response.json()["message"]["content"] == "saved later"
        listing = await client.get(f"/api/chat/{chat_id}/messages")
        assert listing.json()["messages"][-1]["reasoning"] == "why"


class TestUsageAndModels:
    """Usage counter and model catalogue."""

    @pytest.mark.asyncio
    async def test_usage_increment(self, client):
        first = await client.get("/api/usage", headers=GUEST_HEADERS)
        assert first.json() == {"count": 0, "limit": 10, "isLimitReached": False}

        bumped = await client.post("/api/usage", headers=GUEST_HEADERS)
        assert bumped.json()["count"] == 1

    @pytest.mark.asyncio
    async def test_models(self, client, seeded_model):
        response = await client.get("/api/models")
        data = response.json()
        assert data["defaultModelId"] == "mock-model"
        assert [m["modelId"] for m in data["models"]] == ["mock-model"]
        assert data["models"][0]["configured"] is False


class TestHealth:
    """Probes and metrics."""

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/healthz")
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness(self, client):
        response = await client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True, "adapters": True}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "tinychat_registered_models" in response.text

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, client, settings):
        settings.metrics_enabled = False
        assert (await client.get("/metrics")).status_code == 404

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/healthz", headers={"X-Request-ID": "req-1"})
        assert response.headers["x-request-id"] == "req-1"
