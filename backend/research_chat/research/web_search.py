from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup

from research_chat.core.config import Settings
from research_chat.providers.base import (
    HTTPProviderAdapter,
    ProviderError,
    UpstreamTimeout,
    UpstreamUnavailable,
    build_status_error,
    require_api_key,
)

logger = logging.getLogger(__name__)

USER_AGENT = "PolicyResearchBot/1.0"
STRIPPED_TAGS = ("script", "style", "noscript", "header", "footer", "nav", "form")


@dataclass(frozen=True)
class WebSearchResult:
    """One organic search hit."""

    title: str
    url: str
    snippet: str = ""
    position: int = 0


@dataclass(frozen=True)
class WebPage:
    """A fetched page reduced to readable text."""

    url: str
    title: str
    text: str


class WebResearchClient(HTTPProviderAdapter):
    """Web search (SerpAPI-style JSON endpoint) and page fetching."""

    def __init__(
        self,
        search_url: str,
        api_key: Optional[str],
        results_per_query: int = 10,
        page_max_chars: int = 12000,
        page_max_bytes: int = 2_000_000,
        timeout_sec: float = 20,
        fetch_timeout_sec: float = 20,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._search_url = search_url
        self._api_key = api_key
        self._results_per_query = max(1, results_per_query)
        self._page_max_chars = max(500, page_max_chars)
        self._page_max_bytes = max(1024, page_max_bytes)
        self._fetch_timeout = fetch_timeout_sec

    async def search(self, query: str) -> list[WebSearchResult]:
        """Return deduplicated organic results for one query."""

        params = {
            "q": query,
            "num": self._results_per_query,
            "engine": "google",
            "output": "json",
            "api_key": require_api_key(self._api_key, "web search"),
        }
        data = await self._request_json("GET", self._search_url, params=params)
        return self._parse_results(data)[: self._results_per_query]

    async def search_many(self, queries: list[str]) -> dict[str, list[WebSearchResult]]:
        """Run all queries concurrently; a failed query contributes no results."""

        outcomes = await asyncio.gather(
            *(self.search(query) for query in queries), return_exceptions=True
        )
        results: dict[str, list[WebSearchResult]] = {}
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Web search failed for %r: %s", query, outcome)
                results[query] = []
            else:
                results[query] = outcome
        return results

    async def fetch_page(self, url: str) -> WebPage:
        """Download a page and extract its visible text."""

        try:
            if self._client:
                html = await self._read_page(self._client, url)
            else:
                async with httpx.AsyncClient(timeout=self._fetch_timeout) as client:
                    html = await self._read_page(client, url)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout() from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable() from exc
        # BeautifulSoup runs in a worker thread.
        title, text = await asyncio.to_thread(extract_page_text, html, self._page_max_chars)
        return WebPage(url=url, title=title, text=text)

    async def _read_page(self, client: httpx.AsyncClient, url: str) -> str:
        """Stream a page body, stopping once `page_max_bytes` have arrived."""

        async with client.stream(
            "GET", url, headers={"User-Agent": USER_AGENT}, timeout=self._fetch_timeout
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise build_status_error(response)
            content_type = response.headers.get("content-type", "")
            if content_type and "html" not in content_type and "text" not in content_type:
                raise ProviderError(
                    "PAGE_UNSUPPORTED", f"Unsupported content type {content_type} for {url}."
                )
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= self._page_max_bytes:
                    logger.debug("Page %s truncated at %d bytes", url, self._page_max_bytes)
                    break
            encoding = response.encoding or "utf-8"
        return bytes(body[: self._page_max_bytes]).decode(encoding, errors="replace")

    @staticmethod
    def _parse_results(data: dict[str, Any]) -> list[WebSearchResult]:
        results: list[WebSearchResult] = []
        seen: set[str] = set()
        for index, item in enumerate(data.get("organic_results", []) or []):
            if not isinstance(item, dict):
                continue
            url = str(item.get("link") or item.get("url") or "").strip()
            if not url or url in seen:
                continue
            seen.add(url)
            position = item.get("position")
            results.append(
                WebSearchResult(
                    title=str(item.get("title") or "").strip(),
                    url=url,
                    snippet=str(item.get("snippet") or "").strip(),
                    position=position if isinstance(position, int) else index + 1,
                )
            )
        results.sort(key=lambda item: item.position)
        return results


def extract_page_text(html: str, max_chars: int) -> tuple[str, str]:
    """Return the page title and readable body text, clamped to `max_chars`."""

    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()
    text = soup.get_text(separator="\n", strip=True)
    if len(text) > max_chars:
        text = text[:max_chars]
    return title, text


def create_web_research_client(settings: Settings) -> WebResearchClient:
    """Create the web research collaborator from settings."""

    return WebResearchClient(
        search_url=settings.web_search_url,
        api_key=settings.web_search_api_key or None,
        results_per_query=settings.web_search_results_per_query,
        page_max_chars=settings.web_page_max_chars,
        page_max_bytes=settings.web_page_max_bytes,
        timeout_sec=settings.web_search_timeout_sec,
        fetch_timeout_sec=settings.web_fetch_timeout_sec,
    )
