from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import httpx


@dataclass
class ProviderRuntimeConfig:
    """Runtime configuration needed by an LLM adapter."""

    provider: str
    model_name: str
    base_url: str | None = None
    api_key: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class LLMResult:
    """Result returned from an LLM generation call."""

    content: str
    model_provider: str
    model_name: str
    token_in: int | None = None
    token_out: int | None = None


@dataclass
class LLMStreamChunk:
    """One increment of a streamed generation; usage arrives on the last chunk."""

    content: str = ""
    token_in: int | None = None
    token_out: int | None = None


class LLMAdapter(Protocol):
    """Adapter interface for LLM providers."""

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        """Generate a complete response from the provider."""

    def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[LLMStreamChunk]:
        """Stream a response from the provider chunk by chunk."""


class ProviderError(RuntimeError):
    """Raised when an upstream provider or collaborator call fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


class UpstreamTimeout(ProviderError):
    """Raised when an upstream call exceeds its time bound."""

    def __init__(self, message: str = "Provider request timed out.") -> None:
        super().__init__("PROVIDER_TIMEOUT", message, retryable=True)


class UpstreamUnavailable(ProviderError):
    """Raised when an upstream service refuses or drops the connection."""

    def __init__(self, message: str = "Provider connection failed.") -> None:
        super().__init__("PROVIDER_CONNECTION_ERROR", message, retryable=True)


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def join_url(base_url: Optional[str], path: str, provider_name: str) -> str:
    """Join a base URL and an API path without duplicating a version prefix."""

    if not base_url:
        raise ProviderError(
            "PROVIDER_BASE_URL_MISSING", f"Base URL is required for {provider_name}."
        )
    base = base_url.rstrip("/")
    prefix = "/" + path.lstrip("/").split("/", 1)[0]
    if base.endswith(prefix) and path.startswith(prefix + "/"):
        return base + path[len(prefix) :]
    return base + path


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()


class HTTPProviderAdapter:
    """Shared HTTP behavior for provider adapters and collaborator clients."""

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, headers=headers, json=json, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        timeout = self._timeout if timeout is None else timeout
        try:
            if self._client:
                response = await self._client.request(
                    method, url, headers=headers, json=json, params=params, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(
                        method, url, headers=headers, json=json, params=params
                    )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout() from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable() from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response

    async def _stream_lines(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        """Yield non-empty response lines of a streamed request."""

        try:
            if self._client:
                async with self._client.stream(
                    method, url, headers=headers, json=json, timeout=self._timeout
                ) as response:
                    async for line in self._iter_lines(response):
                        yield line
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    async with client.stream(method, url, headers=headers, json=json) as response:
                        async for line in self._iter_lines(response):
                            yield line
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout() from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable() from exc

    @staticmethod
    async def _iter_lines(response: httpx.Response) -> AsyncIterator[str]:
        if response.status_code >= 400:
            await response.aread()
            raise build_status_error(response)
        async for line in response.aiter_lines():
            if line.strip():
                yield line


class MockAdapter:
    """Offline adapter that answers without calling any provider."""

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        question = ""
        for message in reversed(messages):
            if message.get("role") == "user":
                question = str(message.get("content", "")).strip()
                break
        first_line = question.splitlines()[0] if question else "(empty prompt)"
        content = f"Mock answer based on the provided context for: {first_line[:200]}"
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=sum(len(str(item.get("content", ""))) for item in messages) // 4,
            token_out=len(content) // 4,
        )

    async def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[LLMStreamChunk]:
        result = await self.generate(cfg, messages)
        words = result.content.split(" ")
        for index, word in enumerate(words):
            yield LLMStreamChunk(content=word if index == 0 else f" {word}")
        yield LLMStreamChunk(token_in=result.token_in, token_out=result.token_out)
