"""Live WebSocket connections and per-room broadcast groups.

Group membership here is what a room broadcast actually reaches, so presence
is always derived from it and never counted separately.
"""

import asyncio
import enum
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from logging_config import get_logger
from models import utcnow

logger = get_logger(__name__)


class ConnectionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    JOINED = "joined"
    LEFT = "left"
    DISCONNECTED = "disconnected"


TERMINAL_STATES = (ConnectionState.LEFT, ConnectionState.DISCONNECTED)


class Connection:
    """One client socket. Outbound events are queued and written by `pump`."""

    def __init__(self, websocket: Optional[WebSocket] = None, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.connected_at = utcnow()
        self.state = ConnectionState.ANONYMOUS
        self.closed = False
        self.username: Optional[str] = None
        self.room_id: Optional[str] = None
        self.room_token: Optional[str] = None
        self.session_token: Optional[str] = None
        self.nickname: Optional[str] = None
        self.outbox: asyncio.Queue = asyncio.Queue()

    def bind(self, room_id: str, room_token: str, session_token: str, nickname: str):
        self.room_id = room_id
        self.room_token = room_token
        self.session_token = session_token
        self.nickname = nickname
        self.state = ConnectionState.JOINED

    def unbind(self, state: ConnectionState):
        self.room_id = None
        self.room_token = None
        self.session_token = None
        self.nickname = None
        self.state = state

    def send(self, event: str, data: dict):
        if self.closed:
            return
        self.outbox.put_nowait({"event": event, "data": data})

    async def pump(self):
        """Write queued events to the socket until the connection closes."""
        while True:
            message = await self.outbox.get()
            if self.websocket is None or self.websocket.application_state != WebSocketState.CONNECTED:
                return
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Failed to send to connection {self.id}: {e}")
                return


@dataclass
class Notification:
    """An outbound event and the connections it goes to, fixed when built."""

    event: str
    data: Dict[str, Any]
    recipients: list


class ConnectionManager:
    def __init__(self):
        # Format: {connection_id: connection}
        self.connections: Dict[str, Connection] = {}
        # Format: {room_id: {connection_id: connection}}, insertion order is join order
        self.room_groups: Dict[str, Dict[str, Connection]] = {}

    def register(self, connection: Connection):
        self.connections[connection.id] = connection
        logger.debug(f"Registered connection {connection.id} (total: {len(self.connections)})")

    def unregister(self, connection: Connection):
        connection.closed = True
        self.connections.pop(connection.id, None)
        for room_id in list(self.room_groups):
            self.leave_group(room_id, connection)
        logger.debug(f"Unregistered connection {connection.id} (total: {len(self.connections)})")

    def join_group(self, room_id: str, connection: Connection):
        self.room_groups.setdefault(room_id, {})[connection.id] = connection

    def leave_group(self, room_id: str, connection: Connection) -> bool:
        group = self.room_groups.get(room_id)
        if not group or connection.id not in group:
            return False
        del group[connection.id]
        if not group:
            del self.room_groups[room_id]
            logger.debug(f"No more connections in room {room_id}")
        return True

    def members(self, room_id: str) -> list[Connection]:
        return list(self.room_groups.get(room_id, {}).values())

    def all(self) -> list[Connection]:
        return list(self.connections.values())

    def bound_to_session(self, session_token: str) -> list[Connection]:
        return [c for c in self.connections.values() if c.session_token == session_token]

    def deliver(self, notifications: Iterable[Notification]):
        # Must not await: a batch reaches every outbox before another handler runs.
        for notification in notifications:
            for connection in notification.recipients:
                connection.send(notification.event, notification.data)
