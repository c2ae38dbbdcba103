from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from research_chat.repos.memory_repo import MemoryRepo
from research_chat.schemas.chat import ChatMessage, ConversationMemory

logger = logging.getLogger(__name__)

REPLY_SENDERS = frozenset({"bot", "assistant"})


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class MemoryStore:
    """Key/value persistence of conversation memory keyed by memory id.

    `save` always overwrites the whole record; callers merge before saving.
    `lock` serializes turns that share a memory id so a later save cannot
    silently discard an overlapping turn.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker
        self._locks: dict[str, _KeyLock] = {}

    @staticmethod
    def new_memory_id(prefix: str = "") -> str:
        """Create a new opaque memory identifier."""

        return f"{prefix}{uuid.uuid4().hex}"

    async def load(self, memory_id: str) -> Optional[ConversationMemory]:
        """Return the stored memory or None when the id is unknown."""

        async with self._sessionmaker() as db:
            record = await MemoryRepo(db).get_memory(memory_id)
            if not record:
                return None
            return ConversationMemory.model_validate_json(record.payload_json)

    async def save(self, memory_id: str, memory: ConversationMemory) -> None:
        """Persist the memory under `memory_id`, replacing any previous value."""

        if memory.memory_id != memory_id:
            memory = memory.model_copy(update={"memory_id": memory_id})
        payload_json = memory.model_dump_json(by_alias=True)
        bot_kind = memory.agent_metadata.get("bot")
        async with self._sessionmaker() as db:
            async with db.begin():
                await MemoryRepo(db).replace_memory(
                    memory_id=memory_id,
                    bot_kind=str(bot_kind) if bot_kind else None,
                    payload_json=payload_json,
                    cumulative_cost=memory.cumulative_cost,
                )
        logger.debug("Saved memory %s (%d messages)", memory_id, len(memory.chat_log))

    @asynccontextmanager
    async def lock(self, memory_id: str) -> AsyncIterator[None]:
        """Hold the per-memory-id turn lock for the duration of the block."""

        entry = self._locks.setdefault(memory_id, _KeyLock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(memory_id, None)

    def is_locked(self, memory_id: str) -> bool:
        """Return True while a turn holds the lock for `memory_id`."""

        entry = self._locks.get(memory_id)
        return bool(entry and entry.lock.locked())

    async def wait_for_reply(
        self,
        memory_id: str,
        turn_id: str,
        *,
        timeout_sec: float,
        interval_sec: float = 1.0,
    ) -> Optional[ChatMessage]:
        """Poll until a reply stamped with `turn_id` is persisted or time runs out.

        Matching on the per-turn token keeps an unrelated turn on the same
        memory id from being mistaken for completion.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_sec)
        while True:
            memory = await self.load(memory_id)
            if memory:
                for message in reversed(memory.chat_log):
                    if message.turn_id == turn_id and message.sender in REPLY_SENDERS:
                        return message
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(interval_sec, remaining))


def get_memory_store(request: Request) -> MemoryStore:
    """Dependency to access the memory store from app state."""

    return request.app.state.memory_store
