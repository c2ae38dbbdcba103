from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from research_chat.db.base import Base
from research_chat.utils.time_utils import utc_now


class ConversationMemoryRecord(Base):
    """Serialized conversation memory, overwritten on every save."""

    __tablename__ = "conversation_memories"

    memory_id: Mapped[str] = mapped_column(String, primary_key=True)
    bot_kind: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    cumulative_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
