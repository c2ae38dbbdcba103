from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from research_chat.api.websocket import SessionRegistry
from research_chat.core.config import Settings
from research_chat.core.errors import SynthesisFailure
from research_chat.providers.base import ProviderError
from research_chat.research.grounding import GroundingSearch
from research_chat.research.web_search import WebResearchClient
from research_chat.schemas.chat import ChatMessage, ResearchOptions, SourceDocument
from research_chat.schemas.events import StreamEvent
from research_chat.services.bot_runtime import (
    BotRuntime,
    ExecutionMode,
    PartialResult,
    TurnContext,
)
from research_chat.services.grounded_bot import build_grounded_bot
from research_chat.services.live_research_bot import build_live_research_bot
from research_chat.services.llm_service import TextGenerator
from research_chat.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

GROUNDED_MEMORY_PREFIX = "policy-grounded-"
LIVE_MEMORY_PREFIX = "policy-live-"

MAIN_SYSTEM_PROMPT = (
    "You are a policy research assistant. Combine the quantitative data and the "
    "policy research below into one answer to the user's question. Lead with the "
    "key data points, then explain the relevant policies and regulations, then give "
    "actionable recommendations. Keep source citations from the research and do not "
    "invent data that is not in the context. Format the answer in markdown."
)

NO_DATA = "No data was retrieved."
NO_RESEARCH = "No policy research was retrieved."


class OrchestratorState(str, Enum):
    """Progress of one policy turn."""

    IDLE = "idle"
    CALLING_GROUNDED = "calling_grounded"
    AWAITING_GROUNDED_RESULT = "awaiting_grounded_result"
    CALLING_LIVE_RESEARCH = "calling_live_research"
    AWAITING_LIVE_RESULT = "awaiting_live_result"
    SYNTHESIZING = "synthesizing"
    STREAMING_FINAL = "streaming_final"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass
class SubcallResult:
    """What a captured sub-bot turn produced; empty when it degraded."""

    memory_id: str
    text: str = ""
    sources: list[SourceDocument] = field(default_factory=list)
    cost: float = 0.0
    ok: bool = False


def build_data_question(question: str) -> str:
    return (
        f'For this question: "{question}", provide ONLY the raw data values, '
        "measurements, or facts. NO analysis, NO recommendations, NO policy "
        "suggestions, NO conclusions. Just the data."
    )


def build_research_question(question: str, grounded_answer: str) -> str:
    if not grounded_answer:
        return (
            f'For this question: "{question}", research current policies and '
            "regulations that could address this situation. Provide comprehensive "
            "policy recommendations."
        )
    return (
        f'Based on this data: "{grounded_answer}", research current policies and '
        "regulations that could address this situation. Provide comprehensive "
        "policy recommendations."
    )


def build_synthesis_prompt(question: str, data: str, research: str) -> str:
    return (
        f"<USER_QUESTION>\n{question}\n</USER_QUESTION>\n\n"
        f"<RAG_DATA_CONTEXT>\n{data or NO_DATA}\n</RAG_DATA_CONTEXT>\n\n"
        f"<POLICY_RESEARCH_CONTEXT>\n{research or NO_RESEARCH}\n</POLICY_RESEARCH_CONTEXT>"
    )


def merge_sources(*groups: list[SourceDocument]) -> list[SourceDocument]:
    merged: list[SourceDocument] = []
    seen: set[tuple[str, str]] = set()
    for group in groups:
        for source in group:
            key = (source.url, source.title)
            if key in seen:
                continue
            seen.add(key)
            merged.append(source)
    return merged


class PolicyOrchestratorStrategy:
    """Chain the grounded and live-research bots, then synthesize one answer.

    Both sub-bots run captured under their own memory ids and never write to
    the user's socket. A failed or late sub-call degrades to empty context;
    only a failed final synthesis fails the turn.
    """

    name = "policy"

    def __init__(
        self,
        *,
        grounded_bot: Callable[[], BotRuntime],
        live_research_bot: Callable[[], BotRuntime],
        memory_store: MemoryStore,
        generator: TextGenerator,
        subcall_timeout_sec: float = 240,
        poll_grace_sec: float = 10,
        poll_interval_sec: float = 1,
    ) -> None:
        self._grounded_bot = grounded_bot
        self._live_research_bot = live_research_bot
        self._store = memory_store
        self._generator = generator
        self._subcall_timeout = subcall_timeout_sec
        self._poll_grace = poll_grace_sec
        self._poll_interval = poll_interval_sec
        self.state = OrchestratorState.IDLE

    async def route(self, ctx: TurnContext) -> str:
        return "policy"

    async def execute(self, ctx: TurnContext) -> PartialResult:
        question = ctx.question

        self.state = OrchestratorState.CALLING_GROUNDED
        await ctx.emitter.progress(StreamEvent.agent_start("Retrieving data"))
        grounded = await self._subcall(
            self._grounded_bot(),
            GROUNDED_MEMORY_PREFIX,
            build_data_question(question),
            awaiting=OrchestratorState.AWAITING_GROUNDED_RESULT,
        )
        await ctx.emitter.progress(
            StreamEvent.agent_completed(
                "Data retrieved" if grounded.ok else "Continuing without retrieved data"
            )
        )

        self.state = OrchestratorState.CALLING_LIVE_RESEARCH
        await ctx.emitter.progress(StreamEvent.agent_start("Researching policies"))
        live = await self._subcall(
            self._live_research_bot(),
            LIVE_MEMORY_PREFIX,
            build_research_question(question, grounded.text),
            awaiting=OrchestratorState.AWAITING_LIVE_RESULT,
            options=ctx.options,
        )
        await ctx.emitter.progress(
            StreamEvent.agent_completed(
                "Policy research completed" if live.ok else "Continuing without policy research"
            )
        )

        ctx.meter.charge(0, 0, grounded.cost + live.cost)
        ctx.metadata["subcalls"] = {
            "grounded": grounded.memory_id,
            "live_research": live.memory_id,
        }
        sources = merge_sources(grounded.sources, live.sources)
        if sources:
            await ctx.emitter.progress(StreamEvent.source_documents(sources))
        self.state = OrchestratorState.SYNTHESIZING
        return PartialResult(
            context=build_synthesis_prompt(question, grounded.text, live.text),
            sources=sources,
        )

    async def compose(self, ctx: TurnContext, partial: PartialResult) -> AsyncIterator[str]:
        await ctx.emitter.progress(StreamEvent.agent_start("Writing the final answer"))
        try:
            async for piece in self._generator.stream(
                MAIN_SYSTEM_PROMPT, partial.context, ctx.history, meter=ctx.meter
            ):
                self.state = OrchestratorState.STREAMING_FINAL
                yield piece
        except ProviderError as exc:
            self.state = OrchestratorState.ERRORED
            raise SynthesisFailure(f"Final synthesis failed: {exc.message}") from exc
        self.state = OrchestratorState.COMPLETED

    async def _subcall(
        self,
        runtime: BotRuntime,
        prefix: str,
        question: str,
        *,
        awaiting: OrchestratorState,
        options: Optional[ResearchOptions] = None,
    ) -> SubcallResult:
        memory_id = self._store.new_memory_id(prefix)
        turn_id = uuid.uuid4().hex
        task = asyncio.create_task(
            runtime.run_turn(
                [ChatMessage(sender="user", message=question)],
                memory_id,
                mode=ExecutionMode.CAPTURED,
                options=options,
                turn_id=turn_id,
            )
        )
        self.state = awaiting
        try:
            outcome = await asyncio.wait_for(asyncio.shield(task), self._subcall_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Sub-call %s exceeded %ss, polling for its reply", memory_id, self._subcall_timeout
            )
            return await self._poll_reply(task, memory_id, turn_id)
        except asyncio.CancelledError:
            task.cancel()
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Sub-call %s failed", memory_id)
            return SubcallResult(memory_id=memory_id)

        if not outcome.ok:
            logger.warning("Sub-call %s degraded: %s", memory_id, outcome.error)
            return SubcallResult(memory_id=memory_id, cost=outcome.cost)
        return SubcallResult(
            memory_id=memory_id,
            text=outcome.text,
            sources=outcome.sources,
            cost=outcome.cost,
            ok=True,
        )

    async def _poll_reply(
        self, task: asyncio.Task, memory_id: str, turn_id: str
    ) -> SubcallResult:
        try:
            reply = await self._store.wait_for_reply(
                memory_id, turn_id, timeout_sec=self._poll_grace, interval_sec=self._poll_interval
            )
        except Exception:  # noqa: BLE001
            logger.exception("Polling sub-call %s failed", memory_id)
            reply = None
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        # A cancelled sub-turn persists what it spent before it stops.
        cost = await self._spent(memory_id)
        if reply is None or not reply.message:
            logger.warning("Sub-call %s produced no reply; continuing without it", memory_id)
            return SubcallResult(memory_id=memory_id, cost=cost)
        return SubcallResult(
            memory_id=memory_id,
            text=reply.message,
            sources=list(reply.source_documents or []),
            cost=cost,
            ok=True,
        )

    async def _spent(self, memory_id: str) -> float:
        try:
            memory = await self._store.load(memory_id)
        except Exception:  # noqa: BLE001
            logger.exception("Reading the cost of sub-call %s failed", memory_id)
            return 0.0
        return memory.cumulative_cost if memory else 0.0


def build_policy_bot(
    *,
    memory_store: MemoryStore,
    registry: SessionRegistry,
    generator: TextGenerator,
    search: GroundingSearch,
    web: WebResearchClient,
    settings: Settings,
    client_id: Optional[str] = None,
) -> BotRuntime:
    """Assemble the orchestrator runtime with silent sub-bots."""

    def grounded_bot() -> BotRuntime:
        return build_grounded_bot(
            memory_store=memory_store,
            registry=registry,
            generator=generator,
            search=search,
            settings=settings,
            silent=True,
        )

    def live_research_bot() -> BotRuntime:
        return build_live_research_bot(
            memory_store=memory_store,
            registry=registry,
            generator=generator,
            web=web,
            settings=settings,
            silent=True,
        )

    strategy = PolicyOrchestratorStrategy(
        grounded_bot=grounded_bot,
        live_research_bot=live_research_bot,
        memory_store=memory_store,
        generator=generator,
        subcall_timeout_sec=settings.policy_subcall_timeout_sec,
        poll_grace_sec=settings.policy_poll_grace_sec,
        poll_interval_sec=settings.policy_poll_interval_sec,
    )
    return BotRuntime(strategy, memory_store, registry, client_id=client_id)
