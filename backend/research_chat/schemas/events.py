from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from research_chat.schemas.chat import SourceDocument


class StreamEventKind(str, Enum):
    """Event types pushed to a client socket; values are the wire `type`."""

    CLIENT_ID_ASSIGNED = "clientId"
    MEMORY_ID_CREATED = "memoryIdCreated"
    STREAM_CHUNK = "stream"
    END = "end"
    ERROR = "error"
    AGENT_START = "agentStart"
    AGENT_UPDATE = "agentUpdate"
    AGENT_COMPLETED = "agentCompleted"
    SOURCE_DOCUMENTS = "sourceDocuments"


TERMINAL_KINDS = frozenset({StreamEventKind.END, StreamEventKind.ERROR})


class StreamEvent(BaseModel):
    """A single server-to-client stream event."""

    kind: StreamEventKind
    data: Optional[str] = None
    sender: Optional[str] = None
    message: Optional[str] = None
    documents: Optional[list[SourceDocument]] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_wire(self) -> dict[str, Any]:
        """Serialize into the JSON frame the browser client expects."""

        payload: dict[str, Any] = {"type": self.kind.value}
        if self.data is not None:
            payload["data"] = self.data
        if self.sender is not None:
            payload["sender"] = self.sender
        if self.message is not None:
            payload["message"] = self.message
        if self.documents is not None:
            payload["documents"] = [
                item.model_dump(mode="json", by_alias=True) for item in self.documents
            ]
        return payload

    @classmethod
    def client_id_assigned(cls, client_id: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.CLIENT_ID_ASSIGNED, data=client_id)

    @classmethod
    def memory_id_created(cls, memory_id: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.MEMORY_ID_CREATED, data=memory_id)

    @classmethod
    def chunk(cls, text: str, sender: str = "bot") -> "StreamEvent":
        return cls(kind=StreamEventKind.STREAM_CHUNK, sender=sender, message=text)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls(kind=StreamEventKind.END)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.ERROR, message=message)

    @classmethod
    def agent_start(cls, message: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.AGENT_START, message=message)

    @classmethod
    def agent_update(cls, message: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.AGENT_UPDATE, message=message)

    @classmethod
    def agent_completed(cls, message: str) -> "StreamEvent":
        return cls(kind=StreamEventKind.AGENT_COMPLETED, message=message)

    @classmethod
    def source_documents(cls, documents: list[SourceDocument]) -> "StreamEvent":
        return cls(kind=StreamEventKind.SOURCE_DOCUMENTS, documents=list(documents))
