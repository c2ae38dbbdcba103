from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from research_chat.db.models import ConversationMemoryRecord
from research_chat.utils.time_utils import utc_now


class MemoryRepo:
    """Repository for conversation memory persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_memory(self, memory_id: str) -> Optional[ConversationMemoryRecord]:
        """Fetch a memory row by ID."""

        result = await self._db.execute(
            select(ConversationMemoryRecord).where(
                ConversationMemoryRecord.memory_id == memory_id
            )
        )
        return result.scalar_one_or_none()

    async def replace_memory(
        self,
        *,
        memory_id: str,
        bot_kind: Optional[str],
        payload_json: str,
        cumulative_cost: float,
    ) -> ConversationMemoryRecord:
        """Insert a memory row or overwrite the stored payload wholesale."""

        existing = await self.get_memory(memory_id)
        if existing:
            existing.bot_kind = bot_kind
            existing.payload_json = payload_json
            existing.cumulative_cost = cumulative_cost
            existing.updated_at = utc_now()
            await self._db.flush()
            return existing

        record = ConversationMemoryRecord(
            memory_id=memory_id,
            bot_kind=bot_kind,
            payload_json=payload_json,
            cumulative_cost=cumulative_cost,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        self._db.add(record)
        await self._db.flush()
        return record
