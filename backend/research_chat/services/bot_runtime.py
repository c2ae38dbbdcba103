from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol

from research_chat.api.websocket import SessionRegistry
from research_chat.core.errors import ResearchChatError, TurnValidationError
from research_chat.providers.base import ProviderError
from research_chat.schemas.chat import (
    ChatMessage,
    ConversationMemory,
    ResearchOptions,
    SourceDocument,
)
from research_chat.schemas.events import StreamEvent
from research_chat.services.llm_service import CostMeter
from research_chat.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

BOT_SENDER = "bot"
GENERIC_TURN_ERROR = "The assistant could not complete this answer. Please try again."
CANCELLED_TURN_ERROR = "The answer was interrupted before it finished."


class ExecutionMode(str, Enum):
    """How a turn delivers its output."""

    STREAMING = "streaming"
    CAPTURED = "captured"


class TurnState(str, Enum):
    """Lifecycle of a single turn."""

    IDLE = "idle"
    LOADING = "loading"
    ROUTING = "routing"
    EXECUTING = "executing"
    EMITTING = "emitting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    ERRORED = "errored"


class TurnEmitter:
    """Delivers turn events to a client socket or captures them in memory.

    Exactly one terminal event (`end` or `error`) leaves a streaming turn;
    later terminal calls are ignored.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client_id: Optional[str],
        mode: ExecutionMode,
    ) -> None:
        self._registry = registry
        self._client_id = client_id
        self.mode = mode
        self._parts: list[str] = []
        self._closed = False
        self.captured: list[StreamEvent] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def progress(self, event: StreamEvent) -> None:
        """Emit a non-terminal event such as agent progress or sources."""

        if event.is_terminal:
            raise ValueError("Terminal events must go through finish() or fail().")
        await self._deliver(event)

    async def chunk(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        await self._deliver(StreamEvent.chunk(text, sender=BOT_SENDER))

    async def finish(self) -> None:
        await self._terminal(StreamEvent.end())

    async def fail(self, message: str) -> None:
        await self._terminal(StreamEvent.error(message))

    async def _terminal(self, event: StreamEvent) -> None:
        if self._closed:
            return
        self._closed = True
        await self._deliver(event)

    async def _deliver(self, event: StreamEvent) -> None:
        if self.mode is ExecutionMode.CAPTURED:
            self.captured.append(event)
            return
        if self._client_id:
            await self._registry.send(self._client_id, event)


@dataclass
class TurnContext:
    """Per-turn working state handed to a bot strategy."""

    memory_id: str
    turn_id: str
    chat_log: list[ChatMessage]
    memory: ConversationMemory
    options: ResearchOptions
    emitter: TurnEmitter
    meter: CostMeter
    route: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def question(self) -> str:
        """Text of the latest user message."""

        return self.chat_log[-1].message if self.chat_log else ""

    @property
    def history(self) -> list[ChatMessage]:
        """Messages preceding the latest user message."""

        return self.chat_log[:-1]

    @property
    def has_prior_answer(self) -> bool:
        return any(item.sender in ("bot", "assistant") for item in self.history)


@dataclass
class PartialResult:
    """Output of a strategy's execute step consumed by compose."""

    context: str = ""
    sources: list[SourceDocument] = field(default_factory=list)


@dataclass
class TurnOutcome:
    """Result of one turn; the return value of captured execution."""

    memory_id: str
    turn_id: str
    text: str = ""
    sources: list[SourceDocument] = field(default_factory=list)
    cost: float = 0.0
    state: TurnState = TurnState.IDLE
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is TurnState.COMPLETED


class BotStrategy(Protocol):
    """Bot-specific behavior plugged into the shared turn runtime."""

    name: str

    async def route(self, ctx: TurnContext) -> str:
        """Pick the execution path for this turn."""

    async def execute(self, ctx: TurnContext) -> PartialResult:
        """Gather whatever the answer needs (search, research, sub-calls)."""

    def compose(self, ctx: TurnContext, partial: PartialResult) -> AsyncIterator[str]:
        """Produce the answer text incrementally."""


def merge_chat_log(
    stored: list[ChatMessage], incoming: list[ChatMessage]
) -> list[ChatMessage]:
    """Append the part of `incoming` not already at the tail of `stored`.

    Clients resend the whole visible conversation, so the longest suffix of
    the stored log that equals a prefix of the incoming log is skipped.
    """

    overlap = 0
    for size in range(min(len(stored), len(incoming)), 0, -1):
        tail = stored[len(stored) - size :]
        if all(a.same_content(b) for a, b in zip(tail, incoming[:size])):
            overlap = size
            break
    return list(stored) + list(incoming[overlap:])


class BotRuntime:
    """Runs conversation turns for one bot strategy.

    A runtime built with `silent=True` never writes to a client socket; every
    turn it runs is captured and returned as a `TurnOutcome`.
    """

    def __init__(
        self,
        strategy: BotStrategy,
        memory_store: MemoryStore,
        registry: SessionRegistry,
        *,
        client_id: Optional[str] = None,
        silent: bool = False,
    ) -> None:
        self.strategy = strategy
        self._store = memory_store
        self._registry = registry
        self._client_id = client_id
        self.silent = silent
        self.state = TurnState.IDLE

    async def run_turn(
        self,
        chat_log: list[ChatMessage],
        memory_id: Optional[str] = None,
        *,
        mode: ExecutionMode = ExecutionMode.STREAMING,
        options: Optional[ResearchOptions] = None,
        turn_id: Optional[str] = None,
    ) -> TurnOutcome:
        """Run one turn end to end; failures are reported, never raised."""

        if self.silent:
            mode = ExecutionMode.CAPTURED
        turn_id = turn_id or uuid.uuid4().hex
        emitter = TurnEmitter(self._registry, self._client_id, mode)
        meter = CostMeter()
        self.state = TurnState.IDLE

        generated = not memory_id
        if not memory_id:
            memory_id = self._store.new_memory_id()
            await emitter.progress(StreamEvent.memory_id_created(memory_id))

        try:
            async with self._store.lock(memory_id):
                return await self._run_locked(
                    chat_log,
                    memory_id,
                    turn_id=turn_id,
                    emitter=emitter,
                    meter=meter,
                    options=options or ResearchOptions(),
                    generated=generated,
                )
        except asyncio.CancelledError:
            # A cancelled streaming turn still ends with one terminal event.
            logger.info("Turn %s on %s was cancelled", turn_id, memory_id)
            self.state = TurnState.ERRORED
            await emitter.fail(CANCELLED_TURN_ERROR)
            raise

    async def _run_locked(
        self,
        chat_log: list[ChatMessage],
        memory_id: str,
        *,
        turn_id: str,
        emitter: TurnEmitter,
        meter: CostMeter,
        options: ResearchOptions,
        generated: bool,
    ) -> TurnOutcome:
        outcome = TurnOutcome(memory_id=memory_id, turn_id=turn_id)
        self.state = TurnState.LOADING
        try:
            memory = None if generated else await self._store.load(memory_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Loading memory %s failed", memory_id)
            return await self._abort(outcome, emitter, f"Failed to load conversation: {exc}")
        memory = memory or ConversationMemory(memory_id=memory_id)

        merged = merge_chat_log(memory.chat_log, chat_log)
        for message in merged[len(memory.chat_log) :]:
            if message.turn_id is None:
                message.turn_id = turn_id
        ctx = TurnContext(
            memory_id=memory_id,
            turn_id=turn_id,
            chat_log=merged,
            memory=memory,
            options=options,
            emitter=emitter,
            meter=meter,
        )

        partial = PartialResult()
        error: Optional[str] = None
        try:
            if not merged or merged[-1].sender != "user":
                raise TurnValidationError("The chat log must end with a user message.")
            self.state = TurnState.ROUTING
            ctx.route = await self.strategy.route(ctx)
            self.state = TurnState.EXECUTING
            partial = await self.strategy.execute(ctx)
            self.state = TurnState.EMITTING
            async for piece in self.strategy.compose(ctx, partial):
                await emitter.chunk(piece)
        except asyncio.CancelledError:
            self.state = TurnState.ERRORED
            await self._persist(ctx, partial, errored=True)
            raise
        except (ResearchChatError, ProviderError) as exc:
            logger.warning("Turn %s on %s failed: %s", turn_id, memory_id, exc.message)
            error = exc.message
        except Exception:  # noqa: BLE001
            logger.exception("Turn %s on %s failed", turn_id, memory_id)
            error = GENERIC_TURN_ERROR

        if error:
            self.state = TurnState.ERRORED
        else:
            self.state = TurnState.PERSISTING
        persist_error = await self._persist(ctx, partial, errored=bool(error))
        error = error or persist_error

        outcome.text = emitter.text
        outcome.sources = list(partial.sources)
        outcome.cost = meter.total
        if error:
            self.state = TurnState.ERRORED
            outcome.state = TurnState.ERRORED
            outcome.error = error
            await emitter.fail(error)
        else:
            self.state = TurnState.COMPLETED
            outcome.state = TurnState.COMPLETED
            await emitter.finish()
        return outcome

    async def _persist(
        self, ctx: TurnContext, partial: PartialResult, *, errored: bool
    ) -> Optional[str]:
        """Save the merged log plus the reply; return an error message on failure."""

        chat_log = list(ctx.chat_log)
        text = ctx.emitter.text
        if text or not errored:
            chat_log.append(
                ChatMessage(
                    sender=BOT_SENDER,
                    message=text,
                    source_documents=list(partial.sources) or None,
                    turn_id=ctx.turn_id,
                )
            )
        metadata = dict(ctx.memory.agent_metadata)
        metadata.update(ctx.metadata)
        metadata["bot"] = self.strategy.name
        memory = ConversationMemory(
            memory_id=ctx.memory_id,
            chat_log=chat_log,
            cumulative_cost=ctx.memory.cumulative_cost + ctx.meter.total,
            agent_metadata=metadata,
        )
        try:
            await self._store.save(ctx.memory_id, memory)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Persisting memory %s failed", ctx.memory_id)
            return f"Failed to save conversation: {exc}"
        return None

    async def _abort(
        self, outcome: TurnOutcome, emitter: TurnEmitter, message: str
    ) -> TurnOutcome:
        self.state = TurnState.ERRORED
        outcome.state = TurnState.ERRORED
        outcome.error = message
        await emitter.fail(message)
        return outcome
