import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import asyncio
import json

import httpx
import pytest

from research_chat.api.websocket import SessionRegistry
from research_chat.core.config import Settings, get_settings
from research_chat.db.base import create_engine, create_sessionmaker, init_db
from research_chat.main import create_app
from research_chat.providers.base import (
    LLMResult,
    LLMStreamChunk,
    MockAdapter,
    ProviderError,
    ProviderRuntimeConfig,
)
from research_chat.research.grounding import GroundingSearch, GroundingSnippet
from research_chat.research.web_search import WebPage, WebSearchResult
from research_chat.services.grounded_bot import REWRITE_SYSTEM_PROMPT
from research_chat.services.live_research_bot import (
    QUERY_SYSTEM_PROMPT,
    RANK_SYSTEM_PROMPT,
    SCAN_SYSTEM_PROMPT,
)
from research_chat.services.llm_service import TextGenerator
from research_chat.services.memory_store import MemoryStore

STUB_QUERIES = ["query one", "query two", "query three", "query four", "query five"]
STUB_ANSWER = "Stub answer with findings."
STUB_REWRITE = "standalone rewritten query"
# Every stub call reports 10 input and 5 output tokens; at 1.0 per 1k tokens
# each call costs 0.015.
STUB_CALL_COST = 0.015


@pytest.fixture
def anyio_backend():
    return "asyncio"


class StubAdapter:
    """Adapter stub used to avoid external API calls in tests."""

    def __init__(self) -> None:
        self.calls: list[list[dict]] = []
        self.fail_on: set[str] = set()
        self.answer = STUB_ANSWER

    def system_prompts(self) -> list[str]:
        return [messages[0]["content"] for messages in self.calls]

    def _reply(self, messages: list[dict]) -> str:
        system = messages[0]["content"]
        if system in self.fail_on:
            raise ProviderError("PROVIDER_UPSTREAM", "Stub provider failure.", retryable=True)
        if system == QUERY_SYSTEM_PROMPT:
            return json.dumps(STUB_QUERIES)
        if system == RANK_SYSTEM_PROMPT:
            return "[2, 1, 3, 4, 5]"
        if system == SCAN_SYSTEM_PROMPT:
            return json.dumps(
                {
                    "summary": "Page summary.",
                    "howThisIsRelevant": "Covers the question.",
                    "relevanceScore": 0.8,
                }
            )
        if system == REWRITE_SYSTEM_PROMPT:
            return STUB_REWRITE
        return self.answer

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        self.calls.append(messages)
        content = self._reply(messages)
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=10,
            token_out=5,
        )

    async def stream(self, cfg: ProviderRuntimeConfig, messages: list[dict]):
        self.calls.append(messages)
        content = self._reply(messages)
        for index, word in enumerate(content.split(" ")):
            yield LLMStreamChunk(content=word if index == 0 else f" {word}")
        yield LLMStreamChunk(token_in=10, token_out=5)


class StubGroundingSearch(GroundingSearch):
    """Grounding search returning canned snippets."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int]] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self.snippets = [
            GroundingSnippet(
                content="Forest cover fell 12% between 2001 and 2020.",
                title="Tree cover loss",
                url="https://data.example.org/tree-cover",
                score=0.9,
            ),
            GroundingSnippet(
                content="Loss concentrated in the northern provinces.",
                title="Tree cover loss",
                url="https://data.example.org/tree-cover",
                score=0.7,
            ),
            GroundingSnippet(
                content="Protected areas cover 8% of land.",
                title="Protected areas",
                url="https://data.example.org/protected",
                score=0.5,
            ),
        ]

    async def search(self, query: str, context: str, limit: int) -> list[GroundingSnippet]:
        self.calls.append((query, context, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.snippets[:limit]


class StubWebResearch:
    """Web research client returning four results per query."""

    def __init__(self) -> None:
        self.searched: list[str] = []
        self.fetched: list[str] = []
        self.failing_urls: set[str] = set()

    @staticmethod
    def url_for(query: str, index: int) -> str:
        return f"https://web.example.org/{query.replace(' ', '-')}/{index}"

    async def search_many(self, queries: list[str]) -> dict[str, list[WebSearchResult]]:
        self.searched.extend(queries)
        return {
            query: [
                WebSearchResult(
                    title=f"{query} result {index}",
                    url=self.url_for(query, index),
                    snippet="snippet",
                    position=index,
                )
                for index in range(1, 5)
            ]
            for query in queries
        }

    async def fetch_page(self, url: str) -> WebPage:
        self.fetched.append(url)
        if url in self.failing_urls:
            raise ProviderError("PROVIDER_BAD_STATUS", "Provider returned 403: blocked")
        return WebPage(url=url, title=f"Page {url.rsplit('/', 1)[-1]}", text="Policy text.")


class FakeConnection:
    """Stand-in for a WebSocket that records the frames it is sent."""

    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.fail = fail
        self.sent: list[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [item["type"] for item in self.sent]


@pytest.fixture
def settings():
    return Settings(
        LLM_COST_PER_1K_INPUT=1.0,
        LLM_COST_PER_1K_OUTPUT=1.0,
        POLICY_SUBCALL_TIMEOUT_SEC=5,
        POLICY_POLL_GRACE_SEC=0.2,
        POLICY_POLL_INTERVAL_SEC=0.05,
    )


@pytest.fixture
def stub_adapter():
    return StubAdapter()


@pytest.fixture
def stub_search():
    return StubGroundingSearch()


@pytest.fixture
def stub_web():
    return StubWebResearch()


@pytest.fixture
def generator(stub_adapter):
    return TextGenerator(
        stub_adapter,
        ProviderRuntimeConfig(provider="stub", model_name="stub-model"),
        cost_per_1k_input=1.0,
        cost_per_1k_output=1.0,
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
async def store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_memory.db'}")
    await init_db(engine)
    yield MemoryStore(create_sessionmaker(engine))
    await engine.dispose()


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
async def ws_client(registry):
    connection = FakeConnection()
    client_id = await registry.register(connection)
    return client_id, connection


@pytest.fixture
def app(tmp_path, monkeypatch, stub_adapter, stub_search, stub_web):
    db_path = tmp_path / "test_research_chat.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("LLM_COST_PER_1K_INPUT", "1.0")
    monkeypatch.setenv("LLM_COST_PER_1K_OUTPUT", "1.0")
    get_settings.cache_clear()
    app = create_app()
    app.state.provider_service.set_adapters(
        {"openai": stub_adapter, "ollama": stub_adapter, "mock": MockAdapter()}
    )
    app.state.grounding_search = stub_search
    app.state.web_research = stub_web
    return app


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.turn_runner.shutdown()
    await app.state.engine.dispose()
