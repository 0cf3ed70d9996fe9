from typing import Any, Awaitable, Callable, Optional, Type

from pydantic import BaseModel, ValidationError

from connections import TERMINAL_STATES, Connection, ConnectionManager, ConnectionState, Notification
from errors import ChatError, InvalidSession, ValidationFailed
from logging_config import get_logger
from models import Room, Session
from schemas.events import DeleteMessagePayload, JoinRoomPayload, SendMessagePayload, SetUsernamePayload
from services.messages import MessageService
from services.presence import PresenceTracker
from services.room_registry import RoomRegistry
from services.session_manager import SessionManager, normalize_nickname

logger = get_logger(__name__)

Handler = Callable[[Connection, dict], Awaitable[list[Notification]]]


def _parse(model: Type[BaseModel], data: Any):
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        raise ValidationFailed(f"Invalid payload: {field}: {first.get('msg')}", "INVALID_PAYLOAD") from e


def _reply(connection: Connection, event: str, data: dict) -> list[Notification]:
    return [Notification(event, data, [connection])]


class EventDispatcher:
    """Turns client socket events into state changes and outbound notifications.

    Each handler takes `(connection, payload)` and returns the notifications
    to deliver. Handlers that touch presence build them after their last
    await, and `dispatch` delivers them before yielding to the loop again.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        presence: PresenceTracker,
        registry: RoomRegistry,
        sessions: SessionManager,
        messages: MessageService,
    ):
        self.connections = connections
        self.presence = presence
        self.registry = registry
        self.sessions = sessions
        self.messages = messages
        self._handlers: dict[str, Handler] = {
            "set_username": self.on_set_username,
            "get_active_users": self.on_get_active_users,
            "get_public_rooms": self.on_get_public_rooms,
            "join_room": self.on_join_room,
            "send_message": self.on_send_message,
            "delete_message": self.on_delete_message,
            "leave_room": self.on_leave_room,
            "heartbeat": self.on_heartbeat,
        }

    async def dispatch(self, connection: Connection, event: Optional[str], data: Any = None):
        handler = self._handlers.get(event or "")
        try:
            if handler is None:
                raise ValidationFailed(f"Unknown event: {event}", "UNKNOWN_EVENT")
            notifications = await handler(connection, data)
        except ChatError as e:
            logger.warning(f"{event} rejected for connection {connection.id}: {e.code} {e.message}")
            notifications = _reply(connection, "error", e.to_payload())
        except Exception as e:
            logger.error(f"Error handling {event} for connection {connection.id}: {e}", exc_info=True)
            notifications = _reply(connection, "error", {"message": "Internal server error", "code": "INTERNAL_ERROR"})
        self.connections.deliver(notifications)

    def _require_joined(self, connection: Connection):
        if connection.state != ConnectionState.JOINED:
            raise ValidationFailed("Join a room first", "NOT_IN_ROOM")

    # Lobby events

    async def on_set_username(self, connection: Connection, data: dict) -> list[Notification]:
        payload = _parse(SetUsernamePayload, data)
        connection.username = normalize_nickname(payload.username)
        logger.debug(f"Connection {connection.id} set username {connection.username}")
        return _reply(connection, "username_set", {"username": connection.username})

    async def on_get_active_users(self, connection: Connection, data: dict) -> list[Notification]:
        return _reply(connection, "active_users", {"users": self.presence.active_users()})

    async def on_get_public_rooms(self, connection: Connection, data: dict) -> list[Notification]:
        rooms = await self.registry.list_public()
        return _reply(connection, "public_rooms_update", {"rooms": rooms})

    # Room events

    async def on_join_room(self, connection: Connection, data: dict) -> list[Notification]:
        payload = _parse(JoinRoomPayload, data)
        if connection.state == ConnectionState.JOINED:
            raise ValidationFailed("Already in a room", "ALREADY_JOINED")
        if connection.state in TERMINAL_STATES:
            raise ValidationFailed("Connection is closed", "CONNECTION_CLOSED")

        identity = await self.sessions.validate(payload.session_token)
        room = await self.registry.get(identity.room_id)
        if room is None or room.token != payload.room_token:
            raise InvalidSession("Session does not belong to this room", "INVALID_SESSION")
        history = await self.messages.history(room.id)

        if connection.closed or connection.state != ConnectionState.ANONYMOUS:
            # Socket went away (or joined elsewhere) while the lookups ran
            logger.info(f"Connection {connection.id} changed state during join, not joining room {room.id}")
            return []
        return self.presence.join(connection, room, payload.session_token, identity.nickname, history)

    async def on_send_message(self, connection: Connection, data: dict) -> list[Notification]:
        self._require_joined(connection)
        payload = _parse(SendMessagePayload, data)
        identity = await self.sessions.validate(connection.session_token)
        message = await self.messages.send(
            identity,
            payload.message_type(),
            payload.content,
            [a.model_dump(by_alias=True) for a in payload.attachments],
        )
        # Sender included: it receives the stored id and timestamp
        return [Notification("new_message", message.to_event(), self.connections.members(identity.room_id))]

    async def on_delete_message(self, connection: Connection, data: dict) -> list[Notification]:
        self._require_joined(connection)
        payload = _parse(DeleteMessagePayload, data)
        identity = await self.sessions.validate(connection.session_token)
        message = await self.messages.delete(payload.message_id, identity)
        return [Notification("message_deleted", {"messageId": message.id}, self.connections.members(identity.room_id))]

    async def on_leave_room(self, connection: Connection, data: dict) -> list[Notification]:
        self._require_joined(connection)
        await self._drop_session(connection.session_token)
        return self.presence.leave(connection, ConnectionState.LEFT)

    async def on_heartbeat(self, connection: Connection, data: dict) -> list[Notification]:
        self._require_joined(connection)
        await self.sessions.validate(connection.session_token)
        return []

    async def disconnect(self, connection: Connection):
        """Transport callback once the socket is gone. Treated as a leave when joined."""
        connection.closed = True
        notifications = []
        if connection.state == ConnectionState.JOINED:
            await self._drop_session(connection.session_token)
            notifications = self.presence.leave(connection, ConnectionState.DISCONNECTED)
        else:
            connection.unbind(ConnectionState.DISCONNECTED)
        self.connections.unregister(connection)
        self.connections.deliver(notifications)

    async def _drop_session(self, session_token: Optional[str]):
        if not session_token:
            return
        try:
            await self.sessions.remove(session_token)
        except ChatError as e:
            # The inactivity sweep removes it later
            logger.error(f"Could not remove session on leave: {e.code} {e.message}")

    # Pushed by the HTTP layer and the scheduler

    async def broadcast_public_rooms(self):
        rooms = await self.registry.list_public()
        self.connections.deliver([Notification("public_rooms_update", {"rooms": rooms}, self.connections.all())])

    def warn_expiring(self, room: Room, expires_in: int):
        members = self.connections.members(room.id)
        self.connections.deliver([Notification("room_ttl_warning", {"expiresIn": expires_in}, members)])
        return len(members)

    def close_room(self, room_id: str, reason: str):
        self.connections.deliver(self.presence.close(room_id, reason))

    def evict_session(self, session: Session):
        notifications = []
        for connection in self.connections.bound_to_session(session.session_token):
            notifications.append(Notification("error", {
                "message": "Session expired due to inactivity",
                "code": "SESSION_EXPIRED",
            }, [connection]))
            notifications.extend(self.presence.leave(connection, ConnectionState.LEFT))
        self.connections.deliver(notifications)
