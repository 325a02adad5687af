"""Registry of provider adapters."""

from __future__ import annotations

from multichat.ai.anthropic_adapter import AnthropicAdapter
from multichat.ai.client import ProviderAdapter
from multichat.ai.gemini_adapter import GeminiAdapter
from multichat.ai.openai_adapter import OpenAIAdapter
from multichat.config import ProvidersConfig
from multichat.core.types import Provider
from multichat.errors import NotConfigured


class AdapterRegistry:
    """Tracks one adapter per provider."""

    def __init__(self) -> None:
        self._adapters: dict[Provider, ProviderAdapter] = {}

    @classmethod
    def from_config(cls, config: ProvidersConfig) -> AdapterRegistry:
        registry = cls()
        registry.register(OpenAIAdapter(config.openai))
        registry.register(AnthropicAdapter(config.anthropic))
        registry.register(GeminiAdapter(config.gemini))
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: Provider) -> ProviderAdapter | None:
        return self._adapters.get(provider)

    def require(self, provider: Provider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise NotConfigured(f"No adapter registered for {provider.label}.", provider=provider.value)
        return adapter

    def providers(self) -> list[Provider]:
        return list(self._adapters.keys())
