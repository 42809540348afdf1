############################################################
#
# tinychat - Streaming LLM Chat Service
#
# openai_compat.py: Adapter for OpenAI-compatible chat completion APIs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Adapter for OpenAI-compatible ``/chat/completions`` endpoints.

All supported vendors (OpenAI, DeepSeek, DashScope, OpenRouter) speak this
protocol. Subclasses only adjust the endpoint, credentials, headers and the
request payload.

Streaming responses are Server-Sent Events::

    data: {"choices":[{"delta":{"content":"Hi"}}]}
    data: {"choices":[{"delta":{"reasoning_content":"..."}}]}
    data: [DONE]
"""

import codecs
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from tinychat.app.core.adapters.base import (
    AdapterErr,
    AdapterOk,
    AdapterResult,
    ChatMessage,
    DeltaKind,
    ModelAdapter,
    ModelResponse,
    StreamDelta,
    StreamItem,
    UpstreamError,
    normalize_messages,
)
from tinychat.app.logging_config import get_logger
from tinychat.app.settings import Settings

logger = get_logger(__name__)

# Raised while reading a vendor body that does not have the expected shape
MALFORMED_ERRORS = (ValueError, KeyError, IndexError, TypeError, AttributeError)
UPSTREAM_FAILURES = (UpstreamError, httpx.HTTPError) + MALFORMED_ERRORS


def upstream_timeout(settings: Settings) -> httpx.Timeout:
    """Timeout for upstream calls: bounded connect, read as configured (None = unbounded)."""
    return httpx.Timeout(settings.upstream_read_timeout, connect=settings.upstream_connect_timeout)


async def parse_sse_deltas(byte_stream: AsyncIterator[bytes]) -> AsyncIterator[StreamDelta]:
    """Translate an OpenAI-style SSE byte stream into :class:`StreamDelta` items.

    Stops at ``data: [DONE]`` or end of input. An ``error`` object or a chunk
    whose choices are not objects raises :class:`UpstreamError`; undecodable
    chunks are skipped.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    def handle(line: str) -> Optional[List[StreamDelta]]:
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            return []
        data_str = line[5:].strip()
        if data_str == "[DONE]":
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning("sse_chunk_undecodable", chunk=data_str[:200])
            return []
        if not isinstance(data, dict):
            return []
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamError(f"stream error: {message}")

        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise UpstreamError(f"malformed stream chunk: {data_str[:200]}")

        deltas = []
        for choice in choices:
            if not isinstance(choice, dict):
                raise UpstreamError(f"malformed stream chunk: {data_str[:200]}")
            delta = choice.get("delta") or {}
            if not isinstance(delta, dict):
                raise UpstreamError(f"malformed stream chunk: {data_str[:200]}")
            reasoning = delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                deltas.append(StreamDelta(reasoning, DeltaKind.REASONING))
            content = delta.get("content")
            if isinstance(content, str) and content:
                deltas.append(StreamDelta(content, DeltaKind.CONTENT))
        return deltas

    async for chunk_bytes in byte_stream:
        buffer += decoder.decode(chunk_bytes)
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            deltas = handle(line)
            if deltas is None:
                return
            for delta in deltas:
                yield delta

    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n"):
        deltas = handle(line)
        if deltas is None:
            return
        for delta in deltas:
            yield delta


class OpenAICompatibleAdapter(ModelAdapter):
    """Generic adapter for an OpenAI-compatible provider."""

    provider = "openai"
    display_name = "OpenAI"

    # Roles forwarded upstream; None keeps every role
    allowed_roles: Optional[Sequence[str]] = None
    # Prepend the configured system prompt
    include_system_prompt = False
    # Provider only accepts stream=true
    stream_only = False
    # Settings fields are <prefix>_api_key, <prefix>_base_url, <prefix>_placeholder_key
    settings_prefix = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        placeholder_key: Optional[str] = None,
        system_prompt: str = "You are a helpful assistant.",
        temperature: Optional[float] = 0.7,
        max_tokens: Optional[int] = 1000,
        timeout: Optional[httpx.Timeout] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key.strip() if api_key else None
        self.base_url = base_url.rstrip("/")
        self.placeholder_key = placeholder_key
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._timeout = timeout or httpx.Timeout(None, connect=10.0)
        self._client = client
        self._owns_client = client is None

    @classmethod
    def settings_kwargs(cls, settings: Settings) -> Dict[str, Any]:
        """Constructor keyword arguments taken from settings."""
        return {
            "placeholder_key": getattr(settings, f"{cls.settings_prefix}_placeholder_key"),
            "system_prompt": settings.system_prompt,
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
            "timeout": upstream_timeout(settings),
        }

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """Build the adapter from application settings."""
        prefix = cls.settings_prefix
        return cls(
            getattr(settings, f"{prefix}_api_key"),
            getattr(settings, f"{prefix}_base_url"),
            client=client,
            **cls.settings_kwargs(settings),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != self.placeholder_key

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    # -- request building -----------------------------------------------------

    def upstream_model(self, model_id: str) -> str:
        return model_id

    def build_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def build_messages(self, messages: Sequence[ChatMessage]) -> List[ChatMessage]:
        upstream = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if self.allowed_roles is None or m["role"] in self.allowed_roles
        ]
        if self.include_system_prompt and self.system_prompt:
            upstream.insert(0, {"role": "system", "content": self.system_prompt})
        return upstream

    def sampling_params(self, model_id: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        return params

    def build_payload(
        self, messages: Sequence[ChatMessage], model_id: str, stream: bool
    ) -> Dict[str, Any]:
        payload = {
            "model": self.upstream_model(model_id),
            "messages": self.build_messages(messages),
            "stream": stream,
        }
        payload.update(self.sampling_params(model_id))
        return payload

    def simulated_text(self, messages: Sequence[ChatMessage], model_id: str) -> str:
        last = messages[-1]["content"] if messages else ""
        return (
            f"[{self.display_name}] Simulated response to \"{last}\". "
            f"Configure the {self.provider} API key to get real responses."
        )

    # -- upstream calls -------------------------------------------------------

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        await response.aread()
        detail = response.text[:500]
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("error"):
                error = body["error"]
                detail = error.get("message", detail) if isinstance(error, dict) else str(error)
        except ValueError:
            pass
        raise UpstreamError(
            f"{self.display_name} API error: {response.status_code} {detail}".strip(),
            status_code=response.status_code,
        )

    async def _complete_upstream(
        self, messages: Sequence[ChatMessage], model_id: str
    ) -> ModelResponse:
        client = self._get_client()
        payload = self.build_payload(messages, model_id, stream=False)
        response = await client.post(self.endpoint, json=payload, headers=self.build_headers())
        await self._raise_for_status(response)

        try:
            data = response.json()
            message = data["choices"][0]["message"]
            content = message.get("content") or ""
            reasoning = message.get("reasoning_content") or None
        except MALFORMED_ERRORS as e:
            raise UpstreamError(
                f"{self.display_name} API returned a malformed response: {e}"
            ) from e
        return ModelResponse(answer_text=content, reasoning_text=reasoning)

    async def _stream_upstream(
        self, messages: Sequence[ChatMessage], model_id: str
    ) -> AsyncIterator[StreamDelta]:
        client = self._get_client()
        payload = self.build_payload(messages, model_id, stream=True)
        async with client.stream(
            "POST", self.endpoint, json=payload, headers=self.build_headers()
        ) as response:
            await self._raise_for_status(response)
            async for delta in parse_sse_deltas(response.aiter_bytes()):
                yield delta

    async def _collect_stream(
        self, messages: Sequence[ChatMessage], model_id: str
    ) -> ModelResponse:
        content_parts: List[str] = []
        reasoning_parts: List[str] = []
        async for delta in self._stream_upstream(messages, model_id):
            if delta.kind == DeltaKind.REASONING:
                reasoning_parts.append(delta.text)
            else:
                content_parts.append(delta.text)
        return ModelResponse(
            answer_text="".join(content_parts),
            reasoning_text="".join(reasoning_parts) or None,
        )

    def _to_error(self, error: Exception) -> AdapterErr:
        if isinstance(error, UpstreamError):
            reason, status_code = error.message, error.status_code
        elif isinstance(error, httpx.TimeoutException):
            reason, status_code = f"{self.display_name} API timed out", None
        elif isinstance(error, MALFORMED_ERRORS):
            reason, status_code = f"{self.display_name} API returned a malformed response: {error}", None
        else:
            reason, status_code = f"{self.display_name} API request failed: {error}", None
        logger.warning(
            "upstream_error",
            provider=self.provider,
            status=status_code,
            error=reason,
        )
        return AdapterErr(reason=reason, status_code=status_code)

    # -- ModelAdapter ---------------------------------------------------------

    async def complete(self, messages: Sequence[Any], model_id: str) -> AdapterResult:
        messages = normalize_messages(messages)
        self.check_messages(messages)

        if not self.is_configured:
            logger.info("upstream_not_configured", provider=self.provider, model=model_id)
            return AdapterOk(
                ModelResponse(answer_text=self.simulated_text(messages, model_id)),
                simulated=True,
            )

        try:
            if self.stream_only:
                response = await self._collect_stream(messages, model_id)
            else:
                response = await self._complete_upstream(messages, model_id)
        except UPSTREAM_FAILURES as e:
            return self._to_error(e)
        return AdapterOk(response)

    async def stream(self, messages: Sequence[Any], model_id: str) -> AsyncIterator[StreamItem]:
        messages = normalize_messages(messages)
        self.check_messages(messages)

        if not self.is_configured:
            logger.info("upstream_not_configured", provider=self.provider, model=model_id)
            yield StreamDelta(self.simulated_text(messages, model_id))
            return

        try:
            async for delta in self._stream_upstream(messages, model_id):
                yield delta
        except UPSTREAM_FAILURES as e:
            yield self._to_error(e)
