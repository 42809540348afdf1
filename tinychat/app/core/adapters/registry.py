############################################################
#
# tinychat - Streaming LLM Chat Service
#
# registry.py: Model identifier to adapter dispatch table
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Adapter registry.

Maps model identifiers to adapters by exact match. Identifiers that are not
registered go to a single fallback adapter (OpenRouter by default), which
accepts arbitrary ``vendor/model`` ids. Built once at startup.
"""

from typing import Dict, Iterable, List, Optional

import httpx

from tinychat.app.core.adapters.base import ModelAdapter
from tinychat.app.core.adapters.openai_compat import upstream_timeout
from tinychat.app.core.adapters.providers import PROVIDER_ADAPTERS, MockAdapter
from tinychat.app.logging_config import get_logger
from tinychat.app.settings import Settings

logger = get_logger(__name__)


class AdapterRegistry:
    """Exact model-id dispatch with one fallback adapter."""

    def __init__(
        self,
        fallback: Optional[ModelAdapter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._by_model: Dict[str, ModelAdapter] = {}
        self._by_provider: Dict[str, ModelAdapter] = {}
        self.fallback = fallback
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "AdapterRegistry":
        """Create every provider adapter over one shared HTTP client."""
        client = http_client or httpx.AsyncClient(timeout=upstream_timeout(settings))
        registry = cls(http_client=client)

        for provider, adapter_cls in PROVIDER_ADAPTERS.items():
            adapter = adapter_cls.from_settings(settings, client=client)
            registry.register_provider(adapter)
            for model_id in adapter_cls.model_ids:
                registry.register(model_id, adapter)
            logger.debug(
                "adapter_registered",
                provider=provider,
                configured=adapter.is_configured,
            )
        registry.register_provider(MockAdapter())

        registry.fallback = registry.provider(settings.fallback_provider)
        if registry.fallback is None:
            raise ValueError(f"Unknown fallback provider: {settings.fallback_provider}")
        return registry

    def register(self, model_id: str, adapter: ModelAdapter) -> None:
        self._by_model[model_id] = adapter

    def register_provider(self, adapter: ModelAdapter) -> None:
        self._by_provider[adapter.provider] = adapter

    def provider(self, name: str) -> Optional[ModelAdapter]:
        return self._by_provider.get(name)

    def register_descriptors(self, descriptors: Iterable) -> int:
        """Register model descriptors (rows with ``model_id``/``provider``) by provider tag.

        Explicit registrations win. Returns the number of ids added.
        """
        added = 0
        for descriptor in descriptors:
            adapter = self._by_provider.get(descriptor.provider)
            if adapter is None:
                logger.warning(
                    "descriptor_provider_unknown",
                    model_id=descriptor.model_id,
                    provider=descriptor.provider,
                )
                continue
            if descriptor.model_id in self._by_model:
                continue
            self.register(descriptor.model_id, adapter)
            added += 1
        return added

    def is_registered(self, model_id: str) -> bool:
        return model_id in self._by_model

    def model_ids(self) -> List[str]:
        return sorted(self._by_model)

    def resolve(self, model_id: str) -> ModelAdapter:
        """Return the adapter for a model id, or the fallback for unknown ids."""
        adapter = self._by_model.get(model_id)
        if adapter is not None:
            return adapter
        if self.fallback is None:
            raise KeyError(f"No adapter registered for model: {model_id}")
        logger.debug("adapter_fallback", model=model_id, provider=self.fallback.provider)
        return self.fallback

    async def aclose(self) -> None:
        for adapter in set(self._by_provider.values()) | set(self._by_model.values()):
            await adapter.aclose()
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
