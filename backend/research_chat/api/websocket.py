from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from research_chat.core.errors import ClientNotFound
from research_chat.schemas.events import StreamEvent
from research_chat.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class ClientSession:
    """A live duplex connection bound to a client id."""

    client_id: str
    connection: WebSocket
    connected_at: datetime = field(default_factory=utc_now)


class SessionRegistry:
    """Map opaque client ids to live WebSocket connections, one-to-one."""

    def __init__(self) -> None:
        self._sessions: dict[str, ClientSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: WebSocket, client_id: Optional[str] = None) -> str:
        """Accept and bind a connection, then announce its client id."""

        await connection.accept()
        async with self._lock:
            if not client_id or client_id in self._sessions:
                client_id = uuid.uuid4().hex
            self._sessions[client_id] = ClientSession(client_id=client_id, connection=connection)
        logger.info("WebSocket client %s connected", client_id)
        await self.send(client_id, StreamEvent.client_id_assigned(client_id))
        return client_id

    async def unregister(self, client_id: str) -> None:
        async with self._lock:
            removed = self._sessions.pop(client_id, None)
        if removed:
            logger.info("WebSocket client %s disconnected", client_id)

    def is_connected(self, client_id: str) -> bool:
        return client_id in self._sessions

    async def send(self, client_id: str, event: StreamEvent) -> bool:
        """Deliver an event to a client; never raises.

        Unknown ids and dead sockets are logged and reported as False so a
        disconnected browser cannot break a turn that is still running.
        """

        try:
            session = self._get_session(client_id)
        except ClientNotFound as exc:
            logger.debug("Dropping %s event: %s", event.kind.value, exc.message)
            return False
        try:
            await session.connection.send_json(event.to_wire())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Send to client %s failed: %s", client_id, exc)
            async with self._lock:
                if self._sessions.get(client_id) is session:
                    self._sessions.pop(client_id, None)
            return False
        return True

    def _get_session(self, client_id: str) -> ClientSession:
        session = self._sessions.get(client_id) if client_id else None
        if not session:
            raise ClientNotFound(client_id)
        return session


def get_session_registry(websocket: WebSocket) -> SessionRegistry:
    """Dependency to access the session registry from app state."""

    return websocket.app.state.session_registry


@router.websocket("/ws")
async def ws_client(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_session_registry),
) -> None:
    """WebSocket endpoint that streams turn events to one browser client."""

    client_id = await registry.register(websocket, websocket.query_params.get("clientId"))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect as exc:
        logger.debug("WebSocket client %s closed with code %s", client_id, exc.code)
    finally:
        await registry.unregister(client_id)
