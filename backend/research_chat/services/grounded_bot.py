from __future__ import annotations

import logging
from typing import AsyncIterator, Iterable, Optional

from research_chat.api.websocket import SessionRegistry
from research_chat.core.config import Settings
from research_chat.providers.base import ProviderError
from research_chat.research.grounding import GroundingSearch, GroundingSnippet
from research_chat.schemas.chat import ChatMessage, SourceDocument
from research_chat.schemas.events import StreamEvent
from research_chat.services.bot_runtime import BotRuntime, PartialResult, TurnContext
from research_chat.services.llm_service import TextGenerator
from research_chat.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

ROUTE_FIRST_QUESTION = "first_question"
ROUTE_FOLLOW_UP = "follow_up"

REWRITE_SYSTEM_PROMPT = (
    "You rewrite the latest user question of a conversation into one standalone "
    "search query for an environmental and policy data knowledge base. "
    "Resolve pronouns and references using the earlier messages. "
    "Output only the query text."
)

ANSWER_SYSTEM_PROMPT = (
    "You are a research assistant for environmental and policy data. "
    "Answer the user's question using only the context provided. "
    "If the context does not contain the answer, say so plainly instead of guessing. "
    "Refer to sources by their number in square brackets, e.g. [1]. "
    "Format the answer in markdown."
)

HISTORY_CONTEXT_MESSAGES = 6


def format_context(snippets: Iterable[GroundingSnippet]) -> str:
    """Render snippets as numbered context blocks."""

    blocks = []
    for index, snippet in enumerate(snippets, start=1):
        header = f"[{index}] {snippet.title}".rstrip()
        if snippet.url:
            header = f"{header} ({snippet.url})"
        blocks.append(f"{header}\n{snippet.content}")
    return "\n\n".join(blocks)


def collect_sources(snippets: Iterable[GroundingSnippet]) -> list[SourceDocument]:
    """Return `{title, url}` attributions, one per distinct source."""

    sources: list[SourceDocument] = []
    seen: set[tuple[str, str]] = set()
    for snippet in snippets:
        if not snippet.url and not snippet.title:
            continue
        key = (snippet.url or "", "" if snippet.url else snippet.title)
        if key in seen:
            continue
        seen.add(key)
        sources.append(SourceDocument(title=snippet.title or snippet.url, url=snippet.url))
    return sources


def conversation_context(history: Iterable[ChatMessage], limit: int = HISTORY_CONTEXT_MESSAGES) -> str:
    """Flatten recent history into plain text for collaborator calls."""

    lines = [f"{item.sender}: {item.message}" for item in history]
    return "\n".join(lines[-limit:])


class GroundedAnswerStrategy:
    """Answer from retrieval-grounded snippets with source attributions."""

    name = "grounded"

    def __init__(
        self,
        generator: TextGenerator,
        search: GroundingSearch,
        max_results: int = 8,
    ) -> None:
        self._generator = generator
        self._search = search
        self._max_results = max(1, max_results)

    async def route(self, ctx: TurnContext) -> str:
        return ROUTE_FOLLOW_UP if ctx.has_prior_answer else ROUTE_FIRST_QUESTION

    async def execute(self, ctx: TurnContext) -> PartialResult:
        query = ctx.question
        if ctx.route == ROUTE_FOLLOW_UP:
            query = await self._rewrite_query(ctx)
        snippets = await self._search.search(
            query, conversation_context(ctx.history), self._max_results
        )
        logger.info("Grounding search returned %d snippets for %s", len(snippets), ctx.memory_id)
        sources = collect_sources(snippets)
        if sources:
            await ctx.emitter.progress(StreamEvent.source_documents(sources))
        return PartialResult(
            context=format_context(snippets),
            sources=sources,
        )

    async def compose(self, ctx: TurnContext, partial: PartialResult) -> AsyncIterator[str]:
        prompt = (
            "<CONTEXT_TO_ANSWER_USERS_QUESTION_FROM>\n"
            f"{partial.context or 'No context was found.'}\n"
            "</CONTEXT_TO_ANSWER_USERS_QUESTION_FROM>\n\n"
            "<LATEST_USER_QUESTION>\n"
            f"{ctx.question}\n"
            "</LATEST_USER_QUESTION>"
        )
        async for piece in self._generator.stream(
            ANSWER_SYSTEM_PROMPT, prompt, ctx.history, meter=ctx.meter
        ):
            yield piece

    async def _rewrite_query(self, ctx: TurnContext) -> str:
        try:
            rewritten = await self._generator.complete(
                REWRITE_SYSTEM_PROMPT,
                f"Latest question: {ctx.question}",
                ctx.history,
                meter=ctx.meter,
                temperature=0.0,
            )
        except ProviderError as exc:
            logger.warning("Query rewrite failed, searching with the raw question: %s", exc.message)
            return ctx.question
        rewritten = rewritten.strip().strip('"').strip()
        return rewritten or ctx.question


def build_grounded_bot(
    *,
    memory_store: MemoryStore,
    registry: SessionRegistry,
    generator: TextGenerator,
    search: GroundingSearch,
    settings: Settings,
    client_id: Optional[str] = None,
    silent: bool = False,
) -> BotRuntime:
    """Assemble a runtime for the grounded-answer bot."""

    strategy = GroundedAnswerStrategy(
        generator, search, max_results=settings.grounding_max_results
    )
    return BotRuntime(
        strategy, memory_store, registry, client_id=client_id, silent=silent
    )
