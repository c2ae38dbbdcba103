from __future__ import annotations

import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request, status

from research_chat.core.errors import MemoryNotFound
from research_chat.core.security import sanitize_text
from research_chat.schemas.chat import (
    ChatLogResponse,
    DiagnosticAck,
    TurnAccepted,
    TurnRequest,
)
from research_chat.services.bot_runtime import BotRuntime, ExecutionMode, merge_chat_log
from research_chat.services.grounded_bot import build_grounded_bot
from research_chat.services.live_research_bot import build_live_research_bot
from research_chat.services.memory_store import MemoryStore, get_memory_store
from research_chat.services.policy_orchestrator import build_policy_bot
from research_chat.services.turn_runner import TurnRunner, get_turn_runner
from research_chat.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

GROUNDED_BOT = "grounded"
LIVE_RESEARCH_BOT = "live_research"
POLICY_BOT = "policy"

MAX_MESSAGE_LEN = 20000

DIAGNOSTIC_MESSAGE = "Test request received successfully"
DIAGNOSTIC_NOTE = "For full functionality, establish WebSocket connection first"

health_router = APIRouter(prefix="/api", tags=["health"])


@health_router.get("/health")
async def health() -> dict:
    """Liveness probe."""

    return {"status": "ok", "timestamp": utc_now().isoformat()}


def build_bot(kind: str, request: Request, client_id: str) -> BotRuntime:
    """Build the runtime serving `kind` from the services in app state."""

    state = request.app.state
    common = {
        "memory_store": state.memory_store,
        "registry": state.session_registry,
        "generator": state.provider_service.text_generator(),
        "settings": state.settings,
        "client_id": client_id,
    }
    if kind == GROUNDED_BOT:
        return build_grounded_bot(search=state.grounding_search, **common)
    if kind == LIVE_RESEARCH_BOT:
        return build_live_research_bot(web=state.web_research, **common)
    if kind == POLICY_BOT:
        return build_policy_bot(search=state.grounding_search, web=state.web_research, **common)
    raise ValueError(f"Unknown bot kind: {kind}")


def create_chat_router(prefix: str, bot_kind: str) -> APIRouter:
    """Create the PUT/GET turn endpoints for one bot."""

    router = APIRouter(prefix=prefix, tags=[bot_kind])

    @router.put("/", response_model=Union[TurnAccepted, DiagnosticAck])
    async def start_turn(
        payload: TurnRequest,
        request: Request,
        store: MemoryStore = Depends(get_memory_store),
        runner: TurnRunner = Depends(get_turn_runner),
    ) -> Union[TurnAccepted, DiagnosticAck]:
        """Start a streamed turn for the connected client and return at once."""

        if not payload.ws_client_id:
            logger.info("%s turn received without a socket client id", bot_kind)
            return DiagnosticAck(message=DIAGNOSTIC_MESSAGE, note=DIAGNOSTIC_NOTE)

        for message in payload.chat_log:
            message.message = sanitize_text(message.message, MAX_MESSAGE_LEN)
        memory_id = payload.memory_id or store.new_memory_id()
        if store.is_locked(memory_id):
            logger.info("%s turn for %s queued behind the active turn", bot_kind, memory_id)
        try:
            prior = await store.load(memory_id)
            runtime = build_bot(bot_kind, request, payload.ws_client_id)
            runner.start(
                runtime.run_turn(
                    payload.chat_log,
                    memory_id,
                    mode=ExecutionMode.STREAMING,
                    options=payload.research_options(),
                ),
                name=f"{bot_kind}:{memory_id}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Starting %s turn for %s failed", bot_kind, memory_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to start turn: {exc}",
            ) from exc
        chat_log = merge_chat_log(prior.chat_log if prior else [], payload.chat_log)
        return TurnAccepted(memory_id=memory_id, chat_log=chat_log)

    @router.get("/{memory_id}", response_model=ChatLogResponse)
    async def get_chat_log(
        memory_id: str,
        store: MemoryStore = Depends(get_memory_store),
    ) -> ChatLogResponse:
        """Return the persisted conversation and its accumulated cost."""

        try:
            memory = await store.load(memory_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Loading memory %s failed", memory_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to load conversation.",
            ) from exc
        if not memory:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=MemoryNotFound(memory_id).message,
            )
        return ChatLogResponse(chat_log=memory.chat_log, total_costs=memory.cumulative_cost)

    return router


grounded_router = create_chat_router("/api/rd_chat", GROUNDED_BOT)
live_research_router = create_chat_router("/api/live_research_chat", LIVE_RESEARCH_BOT)
policy_router = create_chat_router("/api/policy_research", POLICY_BOT)
