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
    require_api_key,
)


class OpenAIAdapter(HTTPProviderAdapter):
    """Adapter for OpenAI-compatible chat completion APIs."""

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = join_url(cfg.base_url, "/v1/chat/completions", "OpenAI")
        headers = self._auth_headers(cfg.api_key)
        data = await self._request_json(
            "POST", url, headers=headers, json=self._payload(cfg, messages, stream=False)
        )
        choices = data.get("choices", [])
        if not choices:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        content = choices[0].get("message", {}).get("content")
        if not content:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_usage_int(data, "prompt_tokens"),
            token_out=self._get_usage_int(data, "completion_tokens"),
        )

    async def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[LLMStreamChunk]:
        url = join_url(cfg.base_url, "/v1/chat/completions", "OpenAI")
        headers = self._auth_headers(cfg.api_key)
        payload = self._payload(cfg, messages, stream=True)
        async for line in self._stream_lines("POST", url, headers=headers, json=payload):
            if not line.startswith("data:"):
                continue
            body = line[len("data:") :].strip()
            if body == "[DONE]":
                break
            try:
                data = json.loads(body)
            except ValueError as exc:
                raise ProviderError(
                    "PROVIDER_PARSE_ERROR", "Invalid stream chunk from provider."
                ) from exc
            usage = data.get("usage") or {}
            if usage:
                yield LLMStreamChunk(
                    token_in=self._get_usage_int(data, "prompt_tokens"),
                    token_out=self._get_usage_int(data, "completion_tokens"),
                )
            for choice in data.get("choices", []):
                content = (choice.get("delta") or {}).get("content")
                if content:
                    yield LLMStreamChunk(content=content)

    @staticmethod
    def _payload(
        cfg: ProviderRuntimeConfig, messages: list[dict], stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": cfg.model_name, "messages": messages}
        if cfg.temperature is not None:
            payload["temperature"] = cfg.temperature
        if cfg.max_tokens is not None:
            payload["max_tokens"] = cfg.max_tokens
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _auth_headers(api_key: Optional[str]) -> dict[str, str]:
        return {"Authorization": f"Bearer {require_api_key(api_key, 'OpenAI')}"}

    @staticmethod
    def _get_usage_int(data: dict[str, Any], key: str) -> Optional[int]:
        usage = data.get("usage") or {}
        value = usage.get(key)
        return int(value) if isinstance(value, int) else None
