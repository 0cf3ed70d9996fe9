from connections import Connection, ConnectionManager, ConnectionState, Notification
from logging_config import get_logger
from models import Message, Room

logger = get_logger(__name__)


class PresenceTracker:
    """Who is in a room, read from the broadcast groups at the moment of asking.

    Every method that changes membership does so and builds its
    notifications without awaiting, so no other handler can observe or
    change the group in between.
    """

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    def participants(self, room_id: str) -> list[str]:
        seen = set()
        nicknames = []
        for connection in self.connections.members(room_id):
            if connection.nickname and connection.nickname.lower() not in seen:
                seen.add(connection.nickname.lower())
                nicknames.append(connection.nickname)
        return nicknames

    def snapshot(self, room_id: str) -> dict:
        participants = self.participants(room_id)
        return {"participantCount": len(participants), "participants": participants}

    def active_users(self) -> list[str]:
        seen = set()
        users = []
        for connection in self.connections.all():
            name = connection.nickname or connection.username
            if name and name.lower() not in seen:
                seen.add(name.lower())
                users.append(name)
        return users

    def join(self, connection: Connection, room: Room, session_token: str, nickname: str, history: list[Message]) -> list[Notification]:
        connection.bind(room.id, room.token, session_token, nickname)
        self.connections.join_group(room.id, connection)
        snapshot = self.snapshot(room.id)
        others = [c for c in self.connections.members(room.id) if c is not connection]
        logger.info(f"{nickname} joined room {room.id} ({snapshot['participantCount']} present)")
        return [
            Notification("room_joined", {
                "roomToken": room.token,
                **snapshot,
                "messages": [m.to_event() for m in history],
            }, [connection]),
            Notification("user_joined", {"nickname": nickname, **snapshot}, others),
        ]

    def leave(self, connection: Connection, state: ConnectionState) -> list[Notification]:
        """Detach a connection and tell the remaining members.

        Counts are taken after the connection has left its group.
        """
        room_id, nickname = connection.room_id, connection.nickname
        connection.unbind(state)
        if room_id is None or not self.connections.leave_group(room_id, connection):
            return []
        snapshot = self.snapshot(room_id)
        logger.info(f"{nickname} left room {room_id} ({snapshot['participantCount']} present)")
        return [Notification("user_left", {"nickname": nickname, **snapshot}, self.connections.members(room_id))]

    def close(self, room_id: str, reason: str) -> list[Notification]:
        """Detach every member of a room that no longer exists."""
        members = self.connections.members(room_id)
        for connection in members:
            connection.unbind(ConnectionState.LEFT)
            self.connections.leave_group(room_id, connection)
        if members:
            logger.info(f"Room {room_id} closed with {len(members)} connections attached: {reason}")
        return [Notification("room_closed", {"reason": reason}, members)]
