from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

from research_chat.providers.base import (
    HTTPProviderAdapter,
    LLMResult,
    LLMStreamChunk,
    ProviderError,
    ProviderRuntimeConfig,
    join_url,
)


class OllamaAdapter(HTTPProviderAdapter):
    """Adapter for the Ollama local API."""

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = join_url(cfg.base_url, "/api/chat", "Ollama")
        data = await self._request_json(
            "POST", url, json=self._payload(cfg, messages, stream=False)
        )
        message = data.get("message", {})
        content = message.get("content")
        if not content:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_int(data, "prompt_eval_count"),
            token_out=self._get_int(data, "eval_count"),
        )

    async def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[LLMStreamChunk]:
        url = join_url(cfg.base_url, "/api/chat", "Ollama")
        payload = self._payload(cfg, messages, stream=True)
        async for line in self._stream_lines("POST", url, json=payload):
            try:
                data = json.loads(line)
            except ValueError as exc:
                raise ProviderError(
                    "PROVIDER_PARSE_ERROR", "Invalid stream chunk from provider."
                ) from exc
            content = (data.get("message") or {}).get("content")
            if content:
                yield LLMStreamChunk(content=content)
            if data.get("done"):
                yield LLMStreamChunk(
                    token_in=self._get_int(data, "prompt_eval_count"),
                    token_out=self._get_int(data, "eval_count"),
                )
                break

    @staticmethod
    def _payload(
        cfg: ProviderRuntimeConfig, messages: list[dict], stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": cfg.model_name, "messages": messages, "stream": stream}
        options: dict[str, Any] = {}
        if cfg.temperature is not None:
            options["temperature"] = cfg.temperature
        if cfg.max_tokens is not None:
            options["num_predict"] = cfg.max_tokens
        if options:
            payload["options"] = options
        return payload

    @staticmethod
    def _get_int(data: dict[str, Any], key: str) -> Optional[int]:
        value = data.get(key)
        return int(value) if isinstance(value, int) else None
