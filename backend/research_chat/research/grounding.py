from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from research_chat.core.config import Settings
from research_chat.providers.base import HTTPProviderAdapter, join_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroundingSnippet:
    """Ranked context snippet returned by the grounding search."""

    content: str
    title: str
    url: str
    score: float = 0.0


class GroundingSearch(ABC):
    """Search for grounding context snippets with source attributions."""

    @abstractmethod
    async def search(self, query: str, context: str, limit: int) -> list[GroundingSnippet]:
        """Return ranked snippets relevant to `query` given conversation `context`."""


class NullGroundingSearch(GroundingSearch):
    """No-op search used when no retrieval service is configured."""

    async def search(self, query: str, context: str, limit: int) -> list[GroundingSnippet]:
        return []


class HTTPGroundingSearch(HTTPProviderAdapter, GroundingSearch):
    """Client for an external retrieval service exposing `POST /search`."""

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._base_url = base_url

    async def search(self, query: str, context: str, limit: int) -> list[GroundingSnippet]:
        url = join_url(self._base_url, "/search", "grounding search")
        data = await self._request_json(
            "POST", url, json={"query": query, "context": context, "limit": limit}
        )
        snippets = [
            snippet
            for snippet in (self._parse_item(item) for item in data.get("results", []))
            if snippet
        ]
        snippets.sort(key=lambda item: item.score, reverse=True)
        return snippets[:limit]

    @staticmethod
    def _parse_item(item: Any) -> Optional[GroundingSnippet]:
        if not isinstance(item, dict):
            return None
        content = str(item.get("content") or item.get("description") or "").strip()
        if not content:
            return None
        try:
            score = float(item.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        return GroundingSnippet(
            content=content,
            title=str(item.get("title") or "").strip(),
            url=str(item.get("url") or "").strip(),
            score=score,
        )


def create_grounding_search(settings: Settings) -> GroundingSearch:
    """Create the grounding search collaborator for the configured backend."""

    if not settings.grounding_search_url:
        logger.warning("GROUNDING_SEARCH_URL is not set; grounded answers run without context.")
        return NullGroundingSearch()
    return HTTPGroundingSearch(
        settings.grounding_search_url, timeout_sec=settings.grounding_timeout_sec
    )
