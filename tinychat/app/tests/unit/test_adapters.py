"""Model adapter tests.

Upstream providers are faked with httpx.MockTransport; each test checks the
request an adapter sends and how it maps the reply (or failure) to
AdapterOk / AdapterErr / StreamDelta.
"""

import json

import httpx
import pytest

from tinychat.app.core.adapters import (
    AdapterErr,
    AdapterOk,
    DeepSeekAdapter,
    DeltaKind,
    MockAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    QwenAdapter,
    StreamDelta,
    UpstreamError,
)
from tinychat.app.core.adapters.openai_compat import parse_sse_deltas
from tinychat.app.core.thinking import split_thinking


# --- Helpers ---


async def _async_iter(chunks):
    """Convert a list of bytes into an async iterator."""
    for chunk in chunks:
        yield chunk


async def _collect_stream(async_gen):
    """Collect all items from an async generator."""
    items = []
    async for item in async_gen:
        items.append(item)
    return items


def _sse_body(*payloads, done=True) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _delta(**fields):
    return {"choices": [{"index": 0, "delta": fields}]}


def _completion(content, reasoning=None):
    message = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    return {"choices": [{"index": 0, "message": message, "finish_reason": "stop"}]}


class _Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response_factory):
        self.requests = []
        self._factory = response_factory

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._factory(request)

    @property
    def payload(self):
        return json.loads(self.requests[-1].content)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _adapter(cls, handler, **kwargs):
    kwargs.setdefault("placeholder_key", "your-api-key-here")
    return cls("sk-test", "https://upstream.test/v1", client=_client(handler), **kwargs)


USER_ONLY = [{"role": "user", "content": "What is 2+2?"}]


class TestOpenAIAdapter:
    """Plain OpenAI chat completions."""

    @pytest.mark.asyncio
    async def test_complete_success(self, sample_chat_messages):
        handler = _Recorder(lambda r: httpx.Response(200, json=_completion("4")))
        adapter = _adapter(OpenAIAdapter, handler)

        result = await adapter.complete(sample_chat_messages, "gpt-4")

        assert isinstance(result, AdapterOk)
        assert result.simulated is False
        assert result.response.answer_text == "4"
        assert result.response.reasoning_text is None

        request = handler.requests[0]
        assert str(request.url) == "https://upstream.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        payload = handler.payload
        assert payload["model"] == "gpt-4"
        assert payload["stream"] is False
        assert payload["temperature"] == 0.7
        assert payload["max_tokens"] == 1000
        # OpenAI keeps every role, including system
        assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_non_2xx_becomes_error(self):
        handler = _Recorder(
            lambda r: httpx.Response(429, json={"error": {"message": "rate limited"}})
        )
        adapter = _adapter(OpenAIAdapter, handler)

        result = await adapter.complete(USER_ONLY, "gpt-4")

        assert isinstance(result, AdapterErr)
        assert result.status_code == 429
        assert "rate limited" in result.reason

    @pytest.mark.asyncio
    async def test_malformed_body_becomes_error(self):
        handler = _Recorder(lambda r: httpx.Response(200, content=b"not json"))
        adapter = _adapter(OpenAIAdapter, handler)

        result = await adapter.complete(USER_ONLY, "gpt-4")

        assert isinstance(result, AdapterErr)
        assert "malformed" in result.reason

    @pytest.mark.asyncio
    async def test_missing_choices_becomes_error(self):
        handler = _Recorder(lambda r: httpx.Response(200, json={"id": "x"}))
        adapter = _adapter(OpenAIAdapter, handler)

        result = await adapter.complete(USER_ONLY, "gpt-4")

        assert isinstance(result, AdapterErr)

    @pytest.mark.asyncio
    async def test_network_failure_becomes_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter(OpenAIAdapter, handler)
        result = await adapter.complete(USER_ONLY, "gpt-4")

        assert isinstance(result, AdapterErr)
        assert "connection refused" in result.reason

    @pytest.mark.asyncio
    async def test_placeholder_key_is_simulated(self):
        handler = _Recorder(lambda r: httpx.Response(500))
        adapter = OpenAIAdapter(
            "your-api-key-here",
            "https://upstream.test/v1",
            placeholder_key="your-api-key-here",
            client=_client(handler),
        )

        result = await adapter.complete(USER_ONLY, "gpt-4")

        assert isinstance(result, AdapterOk)
        assert result.simulated is True
        assert "Simulated" in result.response.answer_text
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_missing_key_streams_simulated_text(self):
        adapter = OpenAIAdapter(None, "https://upstream.test/v1")
        items = await _collect_stream(adapter.stream(USER_ONLY, "gpt-3.5-turbo"))
        assert len(items) == 1
        assert isinstance(items[0], StreamDelta)
        assert "What is 2+2?" in items[0].text

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        adapter = OpenAIAdapter(None, "https://upstream.test/v1")
        with pytest.raises(ValueError):
            await adapter.complete([], "gpt-4")

    @pytest.mark.asyncio
    async def test_trailing_assistant_message_still_sent(self):
        handler = _Recorder(lambda r: httpx.Response(200, json=_completion("ok")))
        adapter = _adapter(OpenAIAdapter, handler)
        messages = USER_ONLY + [{"role": "assistant", "content": "thinking..."}]

        result = await adapter.complete(messages, "gpt-4")

        assert isinstance(result, AdapterOk)
        assert handler.payload["messages"][-1]["role"] == "assistant"


class TestDeepSeekAdapter:
    """DeepSeek model mapping and reasoning output."""

    @pytest.mark.asyncio
    async def test_r1_maps_to_reasoner_without_temperature(self, sample_chat_messages):
        handler = _Recorder(
            lambda r: httpx.Response(200, json=_completion("4", reasoning="2 plus 2"))
        )
        adapter = _adapter(DeepSeekAdapter, handler)

        result = await adapter.complete(sample_chat_messages, "deepseek-r1")

        payload = handler.payload
        assert payload["model"] == "deepseek-reasoner"
        assert "temperature" not in payload
        assert payload["max_tokens"] == 1000
        roles = [m["role"] for m in payload["messages"]]
        # Incoming system message dropped; configured prompt prepended
        assert roles == ["system", "user", "assistant", "user"]
        assert payload["messages"][0]["content"] == "You are a helpful assistant."

        assert isinstance(result, AdapterOk)
        assert result.response.answer_text == "4"
        assert result.response.reasoning_text == "2 plus 2"
        assert split_thinking(result.response.render()).regions == ["2 plus 2", "4"]

    @pytest.mark.asyncio
    async def test_other_ids_use_chat_model(self):
        handler = _Recorder(lambda r: httpx.Response(200, json=_completion("hi")))
        adapter = _adapter(DeepSeekAdapter, handler)

        await adapter.complete(USER_ONLY, "deepseek-v3")

        assert handler.payload["model"] == "deepseek-chat"
        assert handler.payload["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_stream_reasoning_then_content(self):
        body = _sse_body(
            _delta(role="assistant"),
            _delta(reasoning_content="Let me "),
            _delta(reasoning_content="think."),
            _delta(content="Four"),
        )
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(DeepSeekAdapter, handler)

        items = await _collect_stream(adapter.stream(USER_ONLY, "deepseek-r1"))

        assert handler.payload["stream"] is True
        assert items == [
            StreamDelta("Let me ", DeltaKind.REASONING),
            StreamDelta("think.", DeltaKind.REASONING),
            StreamDelta("Four", DeltaKind.CONTENT),
        ]


class TestQwenAdapter:
    """DashScope compatible mode, stream-only."""

    @pytest.mark.asyncio
    async def test_complete_collects_stream(self, sample_chat_messages):
        body = _sse_body(
            _delta(reasoning_content="hmm"),
            _delta(content="Hello"),
            _delta(content=" world"),
        )
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(QwenAdapter, handler, temperature=None, max_tokens=None)

        result = await adapter.complete(sample_chat_messages, "qwen-qwq-plus")

        payload = handler.payload
        assert payload["model"] == "qwq-32b"
        assert payload["stream"] is True
        assert "temperature" not in payload
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]

        assert isinstance(result, AdapterOk)
        assert result.response.answer_text == "Hello world"
        assert result.response.reasoning_text == "hmm"

    @pytest.mark.asyncio
    async def test_complete_malformed_chunk_returns_error(self):
        body = b'data: {"choices":[{"delta":"oops"}]}\n\n'
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(QwenAdapter, handler)

        result = await adapter.complete(USER_ONLY, "qwen-qwq-plus")

        assert isinstance(result, AdapterErr)
        assert "malformed" in result.reason


class TestOpenRouterAdapter:
    """OpenRouter pass-through and attribution headers."""

    @pytest.mark.asyncio
    async def test_stream_headers_and_model(self):
        body = _sse_body(_delta(content="Hi"), _delta(content=" there"))
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(
            OpenRouterAdapter, handler,
            referer="https://chat.openrouter.ai/", title="Tiny Chat Studio",
        )

        items = await _collect_stream(
            adapter.stream(USER_ONLY, "deepseek/deepseek-chat-v3-0324:free")
        )

        request = handler.requests[0]
        assert request.headers["http-referer"] == "https://chat.openrouter.ai/"
        assert request.headers["x-title"] == "Tiny Chat Studio"
        assert handler.payload["model"] == "deepseek/deepseek-chat-v3-0324:free"
        assert handler.payload["messages"][0]["role"] == "system"
        assert [i.text for i in items] == ["Hi", " there"]

    @pytest.mark.asyncio
    async def test_stream_http_error_yields_final_error(self):
        handler = _Recorder(lambda r: httpx.Response(502, text="bad gateway"))
        adapter = _adapter(OpenRouterAdapter, handler)

        items = await _collect_stream(adapter.stream(USER_ONLY, "x/y"))

        assert len(items) == 1
        assert isinstance(items[0], AdapterErr)
        assert items[0].status_code == 502

    @pytest.mark.asyncio
    async def test_stream_error_event_after_content(self):
        body = _sse_body(
            _delta(content="partial"),
            {"error": {"message": "provider overloaded"}},
            done=False,
        )
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(OpenRouterAdapter, handler)

        items = await _collect_stream(adapter.stream(USER_ONLY, "x/y"))

        assert items[0] == StreamDelta("partial")
        assert isinstance(items[-1], AdapterErr)
        assert "provider overloaded" in items[-1].reason

    @pytest.mark.asyncio
    async def test_stream_malformed_chunk_yields_final_error(self):
        body = _sse_body(_delta(content="partial"), {"choices": ["oops"]})
        handler = _Recorder(lambda r: httpx.Response(200, content=body))
        adapter = _adapter(OpenRouterAdapter, handler)

        items = await _collect_stream(adapter.stream(USER_ONLY, "x/y"))

        assert items[0] == StreamDelta("partial")
        assert len(items) == 2
        assert isinstance(items[-1], AdapterErr)
        assert "malformed" in items[-1].reason


class TestMockAdapter:
    """Offline mock adapter."""

    @pytest.mark.asyncio
    async def test_stream_chunks_join_to_complete(self):
        adapter = MockAdapter(chunk_size=5)
        streamed = await _collect_stream(adapter.stream(USER_ONLY, "mock-model"))
        result = await adapter.complete(USER_ONLY, "mock-model")

        assert len(streamed) > 1
        assert "".join(d.text for d in streamed) == result.response.answer_text
        assert result.simulated is True


class TestParseSSEDeltas:
    """Incremental SSE parsing."""

    @pytest.mark.asyncio
    async def test_events_split_across_chunks(self):
        body = _sse_body(_delta(content="Hello"), _delta(content=" world"))
        chunks = [body[i:i + 7] for i in range(0, len(body), 7)]

        items = await _collect_stream(parse_sse_deltas(_async_iter(chunks)))

        assert [i.text for i in items] == ["Hello", " world"]

    @pytest.mark.asyncio
    async def test_multibyte_character_split(self):
        body = _sse_body(_delta(content="思考"))
        body = body.replace(b"\\u601d\\u8003", "思考".encode("utf-8"))
        split_at = body.index("思".encode("utf-8")) + 1
        chunks = [body[:split_at], body[split_at:]]

        items = await _collect_stream(parse_sse_deltas(_async_iter(chunks)))

        assert [i.text for i in items] == ["思考"]

    @pytest.mark.asyncio
    async def test_stops_at_done(self):
        body = _sse_body(_delta(content="a")) + b'data: {"choices":[{"delta":{"content":"b"}}]}\n\n'
        items = await _collect_stream(parse_sse_deltas(_async_iter([body])))
        assert [i.text for i in items] == ["a"]

    @pytest.mark.asyncio
    async def test_comments_and_bad_chunks_skipped(self):
        body = b": keep-alive\n\ndata: {broken\n\n" + _sse_body(_delta(content="ok"))
        items = await _collect_stream(parse_sse_deltas(_async_iter([body])))
        assert [i.text for i in items] == ["ok"]

    @pytest.mark.asyncio
    async def test_no_trailing_newline(self):
        body = b'data: {"choices":[{"delta":{"content":"tail"}}]}'
        items = await _collect_stream(parse_sse_deltas(_async_iter([body])))
        assert [i.text for i in items] == ["tail"]

    @pytest.mark.asyncio
    async def test_non_object_delta_raises(self):
        body = b'data: {"choices":[{"delta":"oops"}]}\n\n'
        with pytest.raises(UpstreamError):
            await _collect_stream(parse_sse_deltas(_async_iter([body])))

    @pytest.mark.asyncio
    async def test_non_string_content_ignored(self):
        body = _sse_body(_delta(content=5), _delta(content="ok"))
        items = await _collect_stream(parse_sse_deltas(_async_iter([body])))
        assert [i.text for i in items] == ["ok"]


class TestFromSettings:
    """Adapters built from application settings."""

    def test_reads_provider_prefixed_fields(self, settings):
        settings.deepseek_api_key = "sk-deep"
        adapter = DeepSeekAdapter.from_settings(settings)

        assert adapter.api_key == "sk-deep"
        assert adapter.base_url == settings.deepseek_base_url.rstrip("/")
        assert adapter.placeholder_key == settings.deepseek_placeholder_key
        assert adapter.temperature == settings.temperature
        assert adapter.is_configured

    def test_qwen_drops_sampling_params(self, settings):
        adapter = QwenAdapter.from_settings(settings)

        assert adapter.base_url == settings.dashscope_base_url.rstrip("/")
        assert adapter.temperature is None
        assert adapter.max_tokens is None
        assert not adapter.is_configured

    def test_openrouter_attribution(self, settings):
        adapter = OpenRouterAdapter.from_settings(settings)

        assert adapter.referer == settings.openrouter_referer
        assert adapter.title == settings.openrouter_title
        assert adapter.build_headers()["X-Title"] == settings.openrouter_title

    def test_openai_defaults(self, settings):
        adapter = OpenAIAdapter.from_settings(settings)
        assert adapter.endpoint == f"{settings.openai_base_url.rstrip('/')}/chat/completions"
        assert adapter.max_tokens == settings.max_tokens
