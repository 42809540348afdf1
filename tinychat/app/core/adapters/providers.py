############################################################
#
# tinychat - Streaming LLM Chat Service
#
# providers.py: Vendor-specific model adapters
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Vendor adapters built on :class:`OpenAICompatibleAdapter`."""

import asyncio
from typing import Any, AsyncIterator, Dict, Sequence

from tinychat.app.core.adapters.base import (
    AdapterOk,
    AdapterResult,
    ChatMessage,
    ModelAdapter,
    ModelResponse,
    StreamDelta,
    StreamItem,
    normalize_messages,
)
from tinychat.app.core.adapters.openai_compat import OpenAICompatibleAdapter
from tinychat.app.settings import Settings


class OpenAIAdapter(OpenAICompatibleAdapter):
    """OpenAI chat completions (gpt-3.5-turbo, gpt-4)."""

    provider = "openai"
    display_name = "OpenAI"
    model_ids = ("gpt-3.5-turbo", "gpt-4")


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek. ``deepseek-r1`` maps to the reasoning model, anything else to chat."""

    provider = "deepseek"
    display_name = "DeepSeek"
    model_ids = ("deepseek-r1",)
    settings_prefix = "deepseek"
    allowed_roles = ("user", "assistant")
    include_system_prompt = True

    REASONER_ALIAS = "deepseek-r1"
    REASONER_MODEL = "deepseek-reasoner"
    CHAT_MODEL = "deepseek-chat"

    def upstream_model(self, model_id: str) -> str:
        if model_id == self.REASONER_ALIAS:
            return self.REASONER_MODEL
        return self.CHAT_MODEL

    def sampling_params(self, model_id: str) -> Dict[str, Any]:
        params = super().sampling_params(model_id)
        # The reasoner rejects sampling parameters
        if self.upstream_model(model_id) == self.REASONER_MODEL:
            params.pop("temperature", None)
        return params


class QwenAdapter(OpenAICompatibleAdapter):
    """Alibaba DashScope (compatible mode). ``qwen-qwq-plus`` runs ``qwq-32b``."""

    provider = "alibaba"
    display_name = "Qwen"
    model_ids = ("qwen-qwq-plus",)
    settings_prefix = "dashscope"
    allowed_roles = ("user", "assistant")
    stream_only = True

    MODEL_ALIASES = {"qwen-qwq-plus": "qwq-32b"}

    @classmethod
    def settings_kwargs(cls, settings: Settings) -> Dict[str, Any]:
        kwargs = super().settings_kwargs(settings)
        # qwq-32b does not accept sampling parameters
        kwargs.update(temperature=None, max_tokens=None)
        return kwargs

    def upstream_model(self, model_id: str) -> str:
        return self.MODEL_ALIASES.get(model_id, model_id)


class OpenRouterAdapter(OpenAICompatibleAdapter):
    """OpenRouter. Model ids (``vendor/model``) are passed through unchanged."""

    provider = "openrouter"
    display_name = "OpenRouter"
    model_ids = ()
    settings_prefix = "openrouter"
    allowed_roles = ("user", "assistant")
    include_system_prompt = True

    def __init__(self, *args, referer: str = "", title: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.referer = referer
        self.title = title

    @classmethod
    def settings_kwargs(cls, settings: Settings) -> Dict[str, Any]:
        kwargs = super().settings_kwargs(settings)
        kwargs.update(referer=settings.openrouter_referer, title=settings.openrouter_title)
        return kwargs

    def build_headers(self) -> Dict[str, str]:
        headers = super().build_headers()
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers


class MockAdapter(ModelAdapter):
    """Offline adapter that echoes the last user message. Always simulated."""

    provider = "mock"
    display_name = "Mock"

    def __init__(self, delay: float = 0.0, chunk_size: int = 8):
        self.delay = delay
        self.chunk_size = chunk_size

    def _reply(self, messages: Sequence[ChatMessage], model_id: str) -> str:
        return f"Simulated response to \"{messages[-1]['content']}\" from {model_id}."

    async def complete(self, messages: Sequence[Any], model_id: str) -> AdapterResult:
        messages = normalize_messages(messages)
        self.check_messages(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        return AdapterOk(ModelResponse(answer_text=self._reply(messages, model_id)), simulated=True)

    async def stream(self, messages: Sequence[Any], model_id: str) -> AsyncIterator[StreamItem]:
        messages = normalize_messages(messages)
        self.check_messages(messages)
        text = self._reply(messages, model_id)
        for start in range(0, len(text), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamDelta(text[start:start + self.chunk_size])


PROVIDER_ADAPTERS = {
    OpenAIAdapter.provider: OpenAIAdapter,
    DeepSeekAdapter.provider: DeepSeekAdapter,
    QwenAdapter.provider: QwenAdapter,
    OpenRouterAdapter.provider: OpenRouterAdapter,
}
