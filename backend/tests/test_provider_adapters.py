from __future__ import annotations

import json

import httpx
import pytest

from research_chat.providers.base import (
    MockAdapter,
    ProviderError,
    ProviderRuntimeConfig,
    UpstreamTimeout,
    UpstreamUnavailable,
    join_url,
)
from research_chat.providers.ollama_adapter import OllamaAdapter
from research_chat.providers.openai_adapter import OpenAIAdapter

OPENAI_CFG = ProviderRuntimeConfig(
    provider="openai",
    model_name="gpt-test",
    base_url="https://api.openai.com",
    api_key="sk-test",
)
OLLAMA_CFG = ProviderRuntimeConfig(
    provider="ollama",
    model_name="llama3",
    base_url="http://localhost:11434",
)


async def collect(stream) -> tuple[str, list]:
    chunks = [chunk async for chunk in stream]
    return "".join(chunk.content for chunk in chunks), chunks


@pytest.mark.anyio
async def test_openai_adapter_generate():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "hello from openai"}}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 7},
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = OpenAIAdapter(http_client=client)
        result = await adapter.generate(OPENAI_CFG, [{"role": "user", "content": "hi"}])

    assert result.content == "hello from openai"
    assert result.token_in == 5
    assert result.token_out == 7
    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-test"
    assert "stream" not in seen["body"]


@pytest.mark.anyio
async def test_openai_adapter_streams_sse_deltas_and_usage():
    lines = [
        'data: {"choices":[{"delta":{"content":"Hel"}}]}',
        "",
        'data: {"choices":[{"delta":{"content":"lo"}}]}',
        'data: {"choices":[],"usage":{"prompt_tokens":3,"completion_tokens":2}}',
        "data: [DONE]",
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text="\n".join(lines) + "\n")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        text, chunks = await collect(adapter.stream(OPENAI_CFG, [{"role": "user", "content": "hi"}]))

    assert text == "Hello"
    assert chunks[-1].token_in == 3
    assert chunks[-1].token_out == 2


@pytest.mark.anyio
async def test_openai_adapter_requires_api_key():
    adapter = OpenAIAdapter()
    cfg = ProviderRuntimeConfig(provider="openai", model_name="m", base_url="https://x.org")

    with pytest.raises(ProviderError) as exc_info:
        await adapter.generate(cfg, [{"role": "user", "content": "hi"}])

    assert exc_info.value.code == "API_KEY_REQUIRED"


@pytest.mark.anyio
async def test_ollama_adapter_generate_and_stream():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["stream"]:
            frames = [
                {"message": {"content": "hello "}, "done": False},
                {"message": {"content": "ollama"}, "done": False},
                {"message": {"content": ""}, "done": True, "prompt_eval_count": 3, "eval_count": 4},
            ]
            return httpx.Response(200, text="\n".join(json.dumps(item) for item in frames))
        return httpx.Response(
            200,
            json={
                "message": {"content": "hello from ollama"},
                "prompt_eval_count": 3,
                "eval_count": 4,
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OllamaAdapter(http_client=client)
        result = await adapter.generate(OLLAMA_CFG, [{"role": "user", "content": "hi"}])
        text, chunks = await collect(adapter.stream(OLLAMA_CFG, [{"role": "user", "content": "hi"}]))

    assert result.content == "hello from ollama"
    assert result.token_in == 3
    assert text == "hello ollama"
    assert chunks[-1].token_out == 4


@pytest.mark.anyio
async def test_status_errors_are_normalized():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as exc_info:
            await adapter.generate(OPENAI_CFG, [{"role": "user", "content": "hi"}])
        with pytest.raises(ProviderError) as stream_info:
            await collect(adapter.stream(OPENAI_CFG, [{"role": "user", "content": "hi"}]))

    assert exc_info.value.code == "PROVIDER_RATE_LIMIT"
    assert exc_info.value.retryable is True
    assert "slow down" in exc_info.value.message
    assert stream_info.value.status_code == 429


@pytest.mark.anyio
async def test_transport_failures_map_to_upstream_errors():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    def refused_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(timeout_handler)) as client:
        with pytest.raises(UpstreamTimeout):
            await OllamaAdapter(http_client=client).generate(OLLAMA_CFG, [])
    async with httpx.AsyncClient(transport=httpx.MockTransport(refused_handler)) as client:
        with pytest.raises(UpstreamUnavailable):
            await collect(OllamaAdapter(http_client=client).stream(OLLAMA_CFG, []))


def test_join_url_avoids_duplicate_version_prefix():
    assert join_url("https://api.x.org/v1", "/v1/chat/completions", "x") == (
        "https://api.x.org/v1/chat/completions"
    )
    assert join_url("https://api.x.org/", "/v1/chat/completions", "x") == (
        "https://api.x.org/v1/chat/completions"
    )
    with pytest.raises(ProviderError):
        join_url(None, "/api/chat", "Ollama")


@pytest.mark.anyio
async def test_mock_adapter_streams_its_answer():
    cfg = ProviderRuntimeConfig(provider="mock", model_name="mock")
    messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "Why?\nmore"}]

    result = await MockAdapter().generate(cfg, messages)
    text, chunks = await collect(MockAdapter().stream(cfg, messages))

    assert result.content.endswith("for: Why?")
    assert text == result.content
    assert chunks[-1].token_out == result.token_out
