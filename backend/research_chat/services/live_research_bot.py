from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Optional

from research_chat.api.websocket import SessionRegistry
from research_chat.core.config import Settings
from research_chat.providers.base import ProviderError
from research_chat.research.web_search import WebResearchClient, WebSearchResult
from research_chat.schemas.chat import SourceDocument
from research_chat.schemas.events import StreamEvent
from research_chat.services.bot_runtime import BotRuntime, PartialResult, TurnContext
from research_chat.services.llm_service import TextGenerator
from research_chat.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

ROUTE_RESEARCH = "research"
ROUTE_FOLLOW_UP = "follow_up"

QUERY_SYSTEM_PROMPT = (
    "You generate web search queries for policy research. "
    "Return a JSON array of distinct search query strings and nothing else."
)

RANK_SYSTEM_PROMPT = (
    "You rank web search queries by how likely they are to surface authoritative, "
    "current information for the research question. "
    "Return a JSON array of the query numbers, best first, and nothing else."
)

SCAN_SYSTEM_PROMPT = (
    "You analyze a web page for a policy research question. Return a JSON object "
    'with the keys "summary" (string), "howThisIsRelevant" (string) and '
    '"relevanceScore" (number from 0 to 1) and nothing else.'
)

SYNTHESIS_SYSTEM_PROMPT = (
    "You are a policy research analyst. Write a concise, well-structured markdown "
    "report answering the research question from the page notes provided. "
    "Cite sources inline as markdown links using the page URLs. "
    "Do not invent sources or facts that are not in the notes."
)

FOLLOW_UP_SYSTEM_PROMPT = (
    "You are a policy research advisor. Answer the user's follow-up question using "
    "the research report and the conversation so far. Keep citations from the report "
    "when you rely on it, and say so when the report does not cover the question."
)


@dataclass(frozen=True)
class PageNote:
    """What one scanned page contributes to the synthesis."""

    url: str
    title: str
    summary: str
    how_relevant: str = ""
    relevance: float = 0.0


def sample_size(total: int, fraction: float) -> int:
    """Return ceil(total * fraction), at least one when anything is available."""

    if total <= 0:
        return 0
    # 10 * 0.3 evaluates to 3.0000000000000004.
    return min(total, max(1, math.ceil(round(total * fraction, 9))))


def order_by_ranking(items: list[str], ranking: Any) -> list[str]:
    """Reorder `items` by a 1-based index list; unknown entries are ignored."""

    if not isinstance(ranking, list):
        return list(items)
    ordered: list[str] = []
    used: set[int] = set()
    for entry in ranking:
        try:
            index = int(entry) - 1
        except (TypeError, ValueError):
            continue
        if 0 <= index < len(items) and index not in used:
            used.add(index)
            ordered.append(items[index])
    ordered.extend(item for index, item in enumerate(items) if index not in used)
    return ordered


def select_scan_targets(
    results_by_query: dict[str, list[WebSearchResult]],
    queries: Iterable[str],
    fraction: float,
) -> list[WebSearchResult]:
    """Pick the top share of each query's results, deduplicated by URL."""

    targets: list[WebSearchResult] = []
    seen: set[str] = set()
    for query in queries:
        results = results_by_query.get(query, [])
        for result in results[: sample_size(len(results), fraction)]:
            if result.url in seen:
                continue
            seen.add(result.url)
            targets.append(result)
    return targets


def format_notes(notes: Iterable[PageNote]) -> str:
    blocks = []
    for note in notes:
        block = f"Source: [{note.title or note.url}]({note.url})\nSummary: {note.summary}"
        if note.how_relevant:
            block += f"\nRelevance: {note.how_relevant}"
        blocks.append(block)
    return "\n\n".join(blocks)


class LiveResearchStrategy:
    """Web research: generate, rank and sample queries, scan pages, synthesize."""

    name = "live_research"

    def __init__(
        self,
        generator: TextGenerator,
        web: WebResearchClient,
        scan_concurrency: int = 4,
    ) -> None:
        self._generator = generator
        self._web = web
        self._scan_concurrency = max(1, scan_concurrency)

    async def route(self, ctx: TurnContext) -> str:
        return ROUTE_FOLLOW_UP if ctx.has_prior_answer else ROUTE_RESEARCH

    async def execute(self, ctx: TurnContext) -> PartialResult:
        if ctx.route == ROUTE_FOLLOW_UP:
            return PartialResult()
        options = ctx.options

        await ctx.emitter.progress(StreamEvent.agent_start("Generating search queries"))
        queries = await self.generate_queries(ctx, options.number_of_select_queries)
        ranked = await self.rank_queries(ctx, queries)
        selected = ranked[: sample_size(len(ranked), options.percent_of_top_queries_to_search)]
        await ctx.emitter.progress(
            StreamEvent.agent_completed(f"Selected {len(selected)} of {len(ranked)} queries")
        )

        await ctx.emitter.progress(StreamEvent.agent_start("Searching the web"))
        results_by_query = await self._web.search_many(selected)
        targets = select_scan_targets(
            results_by_query, selected, options.percent_of_top_results_to_scan
        )
        await ctx.emitter.progress(
            StreamEvent.agent_completed(f"Found {len(targets)} pages to scan")
        )

        await ctx.emitter.progress(StreamEvent.agent_start("Scanning web pages"))
        notes = await self.scan_pages(ctx, targets)
        await ctx.emitter.progress(
            StreamEvent.agent_completed(f"Scanned {len(notes)} of {len(targets)} pages")
        )

        sources = [SourceDocument(title=note.title or note.url, url=note.url) for note in notes]
        if sources:
            await ctx.emitter.progress(StreamEvent.source_documents(sources))
        ctx.metadata["queries"] = selected
        return PartialResult(
            context=format_notes(notes),
            sources=sources,
        )

    async def compose(self, ctx: TurnContext, partial: PartialResult) -> AsyncIterator[str]:
        if ctx.route == ROUTE_FOLLOW_UP:
            stream = self._generator.stream(
                FOLLOW_UP_SYSTEM_PROMPT, ctx.question, ctx.history, meter=ctx.meter
            )
        else:
            await ctx.emitter.progress(StreamEvent.agent_start("Writing the research report"))
            prompt = (
                f"Research question:\n{ctx.question}\n\n"
                f"Page notes:\n{partial.context or 'No pages could be scanned.'}"
            )
            stream = self._generator.stream(SYNTHESIS_SYSTEM_PROMPT, prompt, meter=ctx.meter)
        async for piece in stream:
            yield piece

    async def generate_queries(self, ctx: TurnContext, count: int) -> list[str]:
        """Ask for `count` search queries; fall back to the question itself."""

        prompt = f"Research question:\n{ctx.question}\n\nGenerate {count} search queries."
        try:
            payload = await self._generator.complete_json(
                QUERY_SYSTEM_PROMPT, prompt, meter=ctx.meter
            )
        except ProviderError as exc:
            logger.warning("Query generation failed: %s", exc.message)
            payload = []
        queries: list[str] = []
        if isinstance(payload, list):
            for item in payload:
                text = str(item).strip() if isinstance(item, (str, int, float)) else ""
                if text and text not in queries:
                    queries.append(text)
        return queries[:count] or [ctx.question]

    async def rank_queries(self, ctx: TurnContext, queries: list[str]) -> list[str]:
        """Order queries best first; invalid output keeps generation order."""

        if len(queries) < 2:
            return list(queries)
        numbered = "\n".join(f"{index}. {query}" for index, query in enumerate(queries, start=1))
        prompt = f"Research question:\n{ctx.question}\n\nQueries:\n{numbered}"
        try:
            ranking = await self._generator.complete_json(
                RANK_SYSTEM_PROMPT, prompt, meter=ctx.meter
            )
        except ProviderError as exc:
            logger.warning("Query ranking failed: %s", exc.message)
            return list(queries)
        return order_by_ranking(queries, ranking)

    async def scan_pages(
        self, ctx: TurnContext, targets: list[WebSearchResult]
    ) -> list[PageNote]:
        """Fetch and analyze pages concurrently; failed pages are skipped."""

        semaphore = asyncio.Semaphore(self._scan_concurrency)

        async def scan(target: WebSearchResult) -> Optional[PageNote]:
            async with semaphore:
                return await self._scan_page(ctx, target)

        notes = await asyncio.gather(*(scan(target) for target in targets))
        found = [note for note in notes if note]
        found.sort(key=lambda note: note.relevance, reverse=True)
        return found

    async def _scan_page(self, ctx: TurnContext, target: WebSearchResult) -> Optional[PageNote]:
        try:
            page = await self._web.fetch_page(target.url)
        except ProviderError as exc:
            logger.info("Skipping %s: %s", target.url, exc.message)
            return None
        text = page.text or target.snippet
        if not text:
            return None
        prompt = (
            f"Research question:\n{ctx.question}\n\n"
            f"Page title: {page.title or target.title}\nPage URL: {target.url}\n\n"
            f"Page text:\n{text}"
        )
        try:
            payload = await self._generator.complete_json(
                SCAN_SYSTEM_PROMPT, prompt, meter=ctx.meter
            )
        except ProviderError as exc:
            logger.info("Page analysis failed for %s: %s", target.url, exc.message)
            return None
        if not isinstance(payload, dict) or not str(payload.get("summary") or "").strip():
            return None
        try:
            relevance = float(payload.get("relevanceScore") or 0.0)
        except (TypeError, ValueError):
            relevance = 0.0
        await ctx.emitter.progress(StreamEvent.agent_update(f"Scanned {target.url}"))
        return PageNote(
            url=target.url,
            title=page.title or target.title,
            summary=str(payload["summary"]).strip(),
            how_relevant=str(payload.get("howThisIsRelevant") or "").strip(),
            relevance=relevance,
        )


def build_live_research_bot(
    *,
    memory_store: MemoryStore,
    registry: SessionRegistry,
    generator: TextGenerator,
    web: WebResearchClient,
    settings: Settings,
    client_id: Optional[str] = None,
    silent: bool = False,
) -> BotRuntime:
    """Assemble a runtime for the live-research bot."""

    strategy = LiveResearchStrategy(
        generator, web, scan_concurrency=settings.web_scan_concurrency
    )
    return BotRuntime(
        strategy, memory_store, registry, client_id=client_id, silent=silent
    )
