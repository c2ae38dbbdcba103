from __future__ import annotations


class ResearchChatError(RuntimeError):
    """Base error for turn orchestration failures."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ClientNotFound(ResearchChatError):
    """Raised when a stream event targets an unknown or closed client."""

    def __init__(self, client_id: str) -> None:
        super().__init__("CLIENT_NOT_FOUND", f"No live connection for client {client_id}.")
        self.client_id = client_id


class MemoryNotFound(ResearchChatError):
    """Raised when a memory id has no persisted conversation."""

    def __init__(self, memory_id: str) -> None:
        super().__init__("MEMORY_NOT_FOUND", f"Memory {memory_id} not found.")
        self.memory_id = memory_id


class TurnValidationError(ResearchChatError):
    """Raised when a turn request cannot be executed as given."""

    def __init__(self, message: str) -> None:
        super().__init__("TURN_INVALID", message)


class SynthesisFailure(ResearchChatError):
    """Raised when the final answer composition of a turn fails."""

    def __init__(self, message: str) -> None:
        super().__init__("SYNTHESIS_FAILED", message)
