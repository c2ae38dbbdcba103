from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import Field

from research_chat.schemas.common import CamelModel
from research_chat.utils.time_utils import utc_now

Sender = Literal["user", "assistant", "system", "bot"]

DEFAULT_NUMBER_OF_SELECT_QUERIES = 5
DEFAULT_PERCENT_OF_TOP_QUERIES_TO_SEARCH = 0.25
DEFAULT_PERCENT_OF_TOP_RESULTS_TO_SCAN = 0.25


class SourceDocument(CamelModel):
    """A source attributed to an answer."""

    title: str = ""
    url: str = ""


class ChatMessage(CamelModel):
    """One entry of a conversation log."""

    sender: Sender
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    source_documents: Optional[list[SourceDocument]] = Field(default=None)
    turn_id: Optional[str] = Field(default=None)

    def same_content(self, other: "ChatMessage") -> bool:
        """Return True when both messages carry the same sender and text."""

        return self.sender == other.sender and self.message == other.message


class ConversationMemory(CamelModel):
    """Durable conversation state keyed by memory id."""

    memory_id: str
    chat_log: list[ChatMessage] = Field(default_factory=list)
    cumulative_cost: float = 0.0
    agent_metadata: dict[str, Any] = Field(default_factory=dict)


class TurnRequest(CamelModel):
    """Payload for starting one conversation turn."""

    chat_log: list[ChatMessage] = Field(default_factory=list)
    ws_client_id: Optional[str] = Field(default=None)
    memory_id: Optional[str] = Field(default=None, max_length=200)
    number_of_select_queries: Optional[int] = Field(default=None, ge=1, le=20)
    percent_of_top_queries_to_search: Optional[float] = Field(default=None, gt=0, le=1)
    percent_of_top_results_to_scan: Optional[float] = Field(default=None, gt=0, le=1)

    def research_options(self) -> "ResearchOptions":
        """Return live-research tunables with defaults applied."""

        return ResearchOptions(
            number_of_select_queries=(
                self.number_of_select_queries or DEFAULT_NUMBER_OF_SELECT_QUERIES
            ),
            percent_of_top_queries_to_search=(
                self.percent_of_top_queries_to_search
                or DEFAULT_PERCENT_OF_TOP_QUERIES_TO_SEARCH
            ),
            percent_of_top_results_to_scan=(
                self.percent_of_top_results_to_scan
                or DEFAULT_PERCENT_OF_TOP_RESULTS_TO_SCAN
            ),
        )


class ResearchOptions(CamelModel):
    """Breadth/depth sampling tunables for live web research."""

    number_of_select_queries: int = DEFAULT_NUMBER_OF_SELECT_QUERIES
    percent_of_top_queries_to_search: float = DEFAULT_PERCENT_OF_TOP_QUERIES_TO_SEARCH
    percent_of_top_results_to_scan: float = DEFAULT_PERCENT_OF_TOP_RESULTS_TO_SCAN


class TurnAccepted(CamelModel):
    """Acknowledgement returned once a turn has been scheduled."""

    memory_id: str
    chat_log: list[ChatMessage] = Field(default_factory=list)


class DiagnosticAck(CamelModel):
    """Acknowledgement for requests sent without a live socket client."""

    message: str
    note: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChatLogResponse(CamelModel):
    """Persisted conversation returned by the GET endpoints."""

    chat_log: list[ChatMessage]
    total_costs: float
