from __future__ import annotations

from typing import Optional

from research_chat.core.config import Settings, get_settings
from research_chat.providers.base import LLMAdapter, MockAdapter, ProviderError, ProviderRuntimeConfig
from research_chat.providers.ollama_adapter import OllamaAdapter
from research_chat.providers.openai_adapter import OpenAIAdapter
from research_chat.services.llm_service import TextGenerator

SUPPORTED_PROVIDERS = ("openai", "ollama", "mock")


class ProviderService:
    """Resolve the configured text-generation provider into a `TextGenerator`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapters: Optional[dict[str, LLMAdapter]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        timeout = self._settings.llm_timeout_sec
        self._adapters = adapters or {
            "openai": OpenAIAdapter(timeout_sec=timeout),
            "ollama": OllamaAdapter(timeout_sec=timeout),
            "mock": MockAdapter(),
        }

    def set_adapters(self, adapters: dict[str, LLMAdapter]) -> None:
        """Override adapter registry (useful for tests)."""

        self._adapters = adapters

    def text_generator(self) -> TextGenerator:
        """Return a generator bound to the configured provider and model."""

        provider = self._normalize_provider(self._settings.llm_provider)
        adapter = self._adapters.get(provider)
        if not adapter:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        runtime_cfg = ProviderRuntimeConfig(
            provider=provider,
            model_name=self._settings.llm_model,
            base_url=self._default_base_url(provider),
            api_key=self._settings.llm_api_key or None,
        )
        return TextGenerator(
            adapter,
            runtime_cfg,
            cost_per_1k_input=self._settings.llm_cost_per_1k_input,
            cost_per_1k_output=self._settings.llm_cost_per_1k_output,
        )

    def _default_base_url(self, provider: str) -> Optional[str]:
        if provider == "openai":
            return self._settings.openai_base_url
        if provider == "ollama":
            return self._settings.ollama_base_url
        return None

    @staticmethod
    def _normalize_provider(provider: str) -> str:
        normalized = provider.strip().lower()
        if normalized not in SUPPORTED_PROVIDERS:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        return normalized
