import asyncio
import functools
import json
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from constants import (
    PERSISTENCE_TIMEOUT_SECONDS,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
)
from errors import UpstreamUnavailable
from logging_config import get_logger
from models import Attachment, Message, MessageType, Room, Session, from_iso, to_iso
from redis_keys import (
    REDIS_MESSAGE_KEY,
    REDIS_PUBLIC_ROOMS,
    REDIS_ROOM_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_NICKNAMES_KEY,
    REDIS_ROOM_SESSIONS_KEY,
    REDIS_ROOM_TOKEN_KEY,
    REDIS_ROOMS_BY_EXPIRY,
    REDIS_SESSION_KEY,
    REDIS_SESSION_MESSAGES_KEY,
    REDIS_SESSION_TOKEN_KEY,
    REDIS_SESSIONS_BY_ACTIVITY,
)

logger = get_logger(__name__)


class SeatClaim(str, Enum):
    CLAIMED = "claimed"
    NICKNAME_TAKEN = "nickname_taken"
    ROOM_FULL = "room_full"


def create_redis_client() -> redis.Redis:
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT} db={REDIS_DB}")
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
        socket_timeout=PERSISTENCE_TIMEOUT_SECONDS,
        socket_connect_timeout=PERSISTENCE_TIMEOUT_SECONDS,
    )


def bounded(fn):
    """Run a gateway call under the persistence timeout.

    Timeouts and Redis failures are reported as UpstreamUnavailable, never as
    an empty result.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.wait_for(fn(self, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Persistence call {fn.__name__} timed out after {self.timeout}s")
            raise UpstreamUnavailable("Persistence call timed out") from e
        except RedisError as e:
            logger.error(f"Persistence call {fn.__name__} failed: {e}", exc_info=True)
            raise UpstreamUnavailable("Persistence is unavailable") from e

    return wrapper


def _encode(data: dict) -> dict:
    # Convert values to strings for a Redis hash, skip None values
    encoded = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, bool):
            encoded[k] = "1" if v else "0"
        elif isinstance(v, datetime):
            encoded[k] = to_iso(v)
        elif isinstance(v, (dict, list)):
            encoded[k] = json.dumps(v)
        else:
            encoded[k] = str(v)
    return encoded


def _room_from_hash(data: dict) -> Optional[Room]:
    if not data or "token" not in data or "expires_at" not in data:
        return None
    return Room(
        id=data["id"],
        token=data["token"],
        name=data.get("name"),
        is_public=data.get("is_public") == "1",
        is_active=data.get("is_active") == "1",
        created_at=from_iso(data["created_at"]),
        expires_at=from_iso(data["expires_at"]),
    )


def _session_from_hash(data: dict) -> Optional[Session]:
    if not data or "session_token" not in data or "room_id" not in data:
        return None
    return Session(
        id=data["id"],
        room_id=data["room_id"],
        nickname=data["nickname"],
        session_token=data["session_token"],
        created_at=from_iso(data["created_at"]),
        last_active_at=from_iso(data["last_active_at"]),
    )


def _message_from_hash(data: dict) -> Optional[Message]:
    if not data or "room_id" not in data:
        return None
    return Message(
        id=data["id"],
        room_id=data["room_id"],
        session_id=data["session_id"],
        nickname=data["nickname"],
        type=MessageType(data["type"]),
        content=data.get("content"),
        attachments=[Attachment.from_dict(a) for a in json.loads(data.get("attachments", "[]"))],
        created_at=from_iso(data["created_at"]),
        edited_at=from_iso(data.get("edited_at")),
        is_deleted=data.get("is_deleted") == "1",
    )


class RedisBackend:
    """Persistence gateway for rooms, sessions and messages."""

    def __init__(self, redis_client: redis.Redis, timeout: float = PERSISTENCE_TIMEOUT_SECONDS):
        self.redis_client = redis_client
        self.timeout = timeout
        logger.info(f"Initializing RedisBackend with a {timeout}s call timeout")

    @bounded
    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()

    async def _update_if_exists(self, key: str, mapping: dict, drop_fields: Iterable[str] = (), extra=None) -> bool:
        """Update hash fields only while the hash still exists.

        A concurrent delete makes this a no-op instead of recreating a
        partial record.
        """
        drop_fields = list(drop_fields)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if not await pipe.exists(key):
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    if mapping:
                        pipe.hset(key, mapping=_encode(mapping))
                    if drop_fields:
                        pipe.hdel(key, *drop_fields)
                    if extra is not None:
                        extra(pipe)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Key {key} changed during update, retrying")
                    continue

    # Rooms

    @bounded
    async def create_room(self, room: Room) -> bool:
        """Persist a room. Returns False if the token is already taken."""
        logger.info(f"Creating room {room.id} with token {room.token}")
        token_key = REDIS_ROOM_TOKEN_KEY.format(token=room.token)
        claimed = await self.redis_client.set(token_key, room.id, nx=True)
        if not claimed:
            logger.debug(f"Room token {room.token} already in use")
            return False

        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(REDIS_ROOM_KEY.format(room_id=room.id), mapping=_encode({
            "id": room.id,
            "token": room.token,
            "name": room.name,
            "is_public": room.is_public,
            "is_active": room.is_active,
            "created_at": room.created_at,
            "expires_at": room.expires_at,
        }))
        pipe.zadd(REDIS_ROOMS_BY_EXPIRY, {room.id: room.expires_at.timestamp()})
        if room.is_public:
            pipe.zadd(REDIS_PUBLIC_ROOMS, {room.id: room.created_at.timestamp()})
        await pipe.execute()
        logger.debug(f"Room {room.id} created successfully")
        return True

    async def _load_room(self, room_id: str) -> Optional[Room]:
        data = await self.redis_client.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        return _room_from_hash(data)

    async def _load_rooms(self, room_ids: list[str]) -> list[Room]:
        if not room_ids:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for room_id in room_ids:
            pipe.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        rows = await pipe.execute()
        return [room for room in map(_room_from_hash, rows) if room is not None]

    @bounded
    async def get_room(self, room_id: str) -> Optional[Room]:
        logger.debug(f"Fetching room {room_id}")
        return await self._load_room(room_id)

    @bounded
    async def get_room_by_token(self, token: str) -> Optional[Room]:
        logger.debug(f"Fetching room by token {token}")
        room_id = await self.redis_client.get(REDIS_ROOM_TOKEN_KEY.format(token=token))
        if not room_id:
            return None
        return await self._load_room(room_id)

    @bounded
    async def deactivate_room(self, room_id: str) -> bool:
        logger.info(f"Deactivating room {room_id}")
        return await self._update_if_exists(
            REDIS_ROOM_KEY.format(room_id=room_id),
            {"is_active": False},
            extra=lambda pipe: pipe.zrem(REDIS_PUBLIC_ROOMS, room_id),
        )

    @bounded
    async def count_room_sessions(self, room_id: str) -> int:
        return await self.redis_client.scard(REDIS_ROOM_SESSIONS_KEY.format(room_id=room_id))

    @bounded
    async def find_public_rooms(self) -> list[Room]:
        """Public rooms, newest first. Callers filter by validity."""
        room_ids = await self.redis_client.zrevrange(REDIS_PUBLIC_ROOMS, 0, -1)
        return await self._load_rooms(room_ids)

    @bounded
    async def find_rooms_expiring_between(self, start: datetime, end: datetime) -> list[Room]:
        room_ids = await self.redis_client.zrangebyscore(
            REDIS_ROOMS_BY_EXPIRY, f"({start.timestamp()}", end.timestamp()
        )
        return await self._load_rooms(room_ids)

    @bounded
    async def find_expired_room_ids(self, now: datetime) -> list[str]:
        return await self.redis_client.zrangebyscore(REDIS_ROOMS_BY_EXPIRY, "-inf", now.timestamp())

    @bounded
    async def delete_room(self, room_id: str) -> list[Session]:
        """Hard-delete a room with its sessions and messages. Returns the removed sessions."""
        logger.info(f"Deleting room {room_id}")
        room = await self._load_room(room_id)
        session_ids = await self.redis_client.smembers(REDIS_ROOM_SESSIONS_KEY.format(room_id=room_id))
        sessions = await self._load_sessions(list(session_ids))
        message_ids = await self.redis_client.zrange(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), 0, -1)

        pipe = self.redis_client.pipeline(transaction=True)
        pipe.delete(
            REDIS_ROOM_KEY.format(room_id=room_id),
            REDIS_ROOM_SESSIONS_KEY.format(room_id=room_id),
            REDIS_ROOM_NICKNAMES_KEY.format(room_id=room_id),
            REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id),
        )
        if room is not None:
            pipe.delete(REDIS_ROOM_TOKEN_KEY.format(token=room.token))
        pipe.zrem(REDIS_ROOMS_BY_EXPIRY, room_id)
        pipe.zrem(REDIS_PUBLIC_ROOMS, room_id)
        for session in sessions:
            self._queue_session_delete(pipe, session)
        for message_id in message_ids:
            pipe.delete(REDIS_MESSAGE_KEY.format(message_id=message_id))
        await pipe.execute()
        logger.debug(f"Room {room_id} deleted: sessions={len(sessions)}, messages={len(message_ids)}")
        return sessions

    # Sessions

    @bounded
    async def create_session(self, session: Session, max_capacity: Optional[int] = None) -> SeatClaim:
        """Persist a session if its nickname is free and the room has a seat left.

        The nickname claim, the capacity check and the inserts commit as one
        transaction, so of two racing creates at most one takes the last
        seat or a given nickname (case-insensitively).
        """
        sessions_key = REDIS_ROOM_SESSIONS_KEY.format(room_id=session.room_id)
        nicknames_key = REDIS_ROOM_NICKNAMES_KEY.format(room_id=session.room_id)
        nickname_field = session.nickname.lower()
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(sessions_key, nicknames_key)
                    if await pipe.hexists(nicknames_key, nickname_field):
                        await pipe.unwatch()
                        logger.debug(f"Nickname {session.nickname} already taken in room {session.room_id}")
                        return SeatClaim.NICKNAME_TAKEN
                    if max_capacity is not None and await pipe.scard(sessions_key) >= max_capacity:
                        await pipe.unwatch()
                        logger.debug(f"No seat left in room {session.room_id}")
                        return SeatClaim.ROOM_FULL
                    pipe.multi()
                    pipe.hset(nicknames_key, nickname_field, session.id)
                    pipe.hset(REDIS_SESSION_KEY.format(session_id=session.id), mapping=_encode({
                        "id": session.id,
                        "room_id": session.room_id,
                        "nickname": session.nickname,
                        "session_token": session.session_token,
                        "created_at": session.created_at,
                        "last_active_at": session.last_active_at,
                    }))
                    pipe.set(REDIS_SESSION_TOKEN_KEY.format(token=session.session_token), session.id)
                    pipe.sadd(sessions_key, session.id)
                    pipe.zadd(REDIS_SESSIONS_BY_ACTIVITY, {session.id: session.last_active_at.timestamp()})
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug(f"Room {session.room_id} seats changed during join, retrying")
                    continue
        logger.debug(f"Session {session.id} created in room {session.room_id}")
        return SeatClaim.CLAIMED

    async def _load_session(self, session_id: str) -> Optional[Session]:
        data = await self.redis_client.hgetall(REDIS_SESSION_KEY.format(session_id=session_id))
        return _session_from_hash(data)

    async def _load_sessions(self, session_ids: list[str]) -> list[Session]:
        if not session_ids:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for session_id in session_ids:
            pipe.hgetall(REDIS_SESSION_KEY.format(session_id=session_id))
        rows = await pipe.execute()
        return [session for session in map(_session_from_hash, rows) if session is not None]

    @bounded
    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self._load_session(session_id)

    @bounded
    async def get_session_by_token(self, session_token: str) -> Optional[Session]:
        session_id = await self.redis_client.get(REDIS_SESSION_TOKEN_KEY.format(token=session_token))
        if not session_id:
            return None
        return await self._load_session(session_id)

    @bounded
    async def find_room_sessions(self, room_id: str) -> list[Session]:
        session_ids = await self.redis_client.smembers(REDIS_ROOM_SESSIONS_KEY.format(room_id=room_id))
        sessions = await self._load_sessions(list(session_ids))
        return sorted(sessions, key=lambda s: s.created_at)

    @bounded
    async def touch_session(self, session_id: str, now: datetime) -> bool:
        """Refresh last_active_at. Returns False if the session no longer exists."""
        return await self._update_if_exists(
            REDIS_SESSION_KEY.format(session_id=session_id),
            {"last_active_at": now},
            extra=lambda pipe: pipe.zadd(REDIS_SESSIONS_BY_ACTIVITY, {session_id: now.timestamp()}),
        )

    @bounded
    async def find_inactive_session_ids(self, before: datetime) -> list[str]:
        return await self.redis_client.zrangebyscore(
            REDIS_SESSIONS_BY_ACTIVITY, "-inf", f"({before.timestamp()}"
        )

    def _queue_session_delete(self, pipe, session: Session):
        pipe.delete(
            REDIS_SESSION_KEY.format(session_id=session.id),
            REDIS_SESSION_TOKEN_KEY.format(token=session.session_token),
            REDIS_SESSION_MESSAGES_KEY.format(session_id=session.id),
        )
        pipe.srem(REDIS_ROOM_SESSIONS_KEY.format(room_id=session.room_id), session.id)
        pipe.zrem(REDIS_SESSIONS_BY_ACTIVITY, session.id)

    @bounded
    async def delete_session(self, session_id: str, inactive_before: Optional[datetime] = None) -> Optional[Session]:
        """Delete a session and free its nickname. Returns the deleted session, if any.

        With `inactive_before`, the session is kept (and None returned) if it
        was active at or after that time when the delete commits.
        """
        session = await self._load_session(session_id)
        if session is None:
            # Drop a dangling activity entry left behind by a cascaded delete
            await self.redis_client.zrem(REDIS_SESSIONS_BY_ACTIVITY, session_id)
            return None

        session_key = REDIS_SESSION_KEY.format(session_id=session.id)
        nicknames_key = REDIS_ROOM_NICKNAMES_KEY.format(room_id=session.room_id)
        nickname_field = session.nickname.lower()
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(session_key, nicknames_key)
                    if inactive_before is not None:
                        last_active_at = from_iso(await pipe.hget(session_key, "last_active_at"))
                        if last_active_at is None or last_active_at >= inactive_before:
                            await pipe.unwatch()
                            logger.debug(f"Session {session.id} active again or gone, not deleting")
                            return None
                    owner = await pipe.hget(nicknames_key, nickname_field)
                    pipe.multi()
                    if owner == session.id:
                        pipe.hdel(nicknames_key, nickname_field)
                    self._queue_session_delete(pipe, session)
                    await pipe.execute()
                    break
                except WatchError:
                    continue
        logger.debug(f"Session {session.id} removed from room {session.room_id}")
        return session

    @bounded
    async def delete_room_sessions(self, room_id: str) -> list[Session]:
        session_ids = await self.redis_client.smembers(REDIS_ROOM_SESSIONS_KEY.format(room_id=room_id))
        sessions = await self._load_sessions(list(session_ids))
        pipe = self.redis_client.pipeline(transaction=True)
        for session in sessions:
            self._queue_session_delete(pipe, session)
        pipe.delete(REDIS_ROOM_NICKNAMES_KEY.format(room_id=room_id))
        await pipe.execute()
        logger.debug(f"Removed {len(sessions)} sessions from room {room_id}")
        return sessions

    # Messages

    @bounded
    async def create_message(self, message: Message) -> bool:
        """Store a message while its author session exists. Returns False otherwise."""
        score = message.created_at.timestamp()
        record = _encode({
            "id": message.id,
            "room_id": message.room_id,
            "session_id": message.session_id,
            "nickname": message.nickname,
            "type": message.type.value,
            "content": message.content,
            "attachments": [a.to_dict() for a in message.attachments],
            "created_at": message.created_at,
            "is_deleted": message.is_deleted,
        })

        def queue_writes(pipe):
            pipe.hset(REDIS_MESSAGE_KEY.format(message_id=message.id), mapping=record)
            pipe.zadd(REDIS_ROOM_MESSAGES_KEY.format(room_id=message.room_id), {message.id: score})
            pipe.zadd(REDIS_SESSION_MESSAGES_KEY.format(session_id=message.session_id), {message.id: score})

        # A room delete removes its sessions in the same transaction, so a live session implies a live room
        stored = await self._update_if_exists(REDIS_SESSION_KEY.format(session_id=message.session_id), {}, extra=queue_writes)
        if stored:
            logger.debug(f"Message {message.id} stored in room {message.room_id}")
        else:
            logger.debug(f"Message {message.id} dropped, session {message.session_id} is gone")
        return stored

    async def _load_messages(self, message_ids: list[str]) -> list[Message]:
        if not message_ids:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for message_id in message_ids:
            pipe.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
        rows = await pipe.execute()
        return [message for message in map(_message_from_hash, rows) if message is not None]

    @bounded
    async def get_message(self, message_id: str) -> Optional[Message]:
        data = await self.redis_client.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
        return _message_from_hash(data)

    @bounded
    async def find_room_messages(self, room_id: str, limit: int, before: Optional[datetime] = None) -> list[Message]:
        """Non-deleted messages of a room, newest first."""
        key = REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id)
        max_score = f"({before.timestamp()}" if before else "+inf"
        found: list[Message] = []
        offset = 0
        while len(found) < limit:
            message_ids = await self.redis_client.zrevrangebyscore(key, max_score, "-inf", start=offset, num=limit)
            if not message_ids:
                break
            offset += len(message_ids)
            found.extend(m for m in await self._load_messages(message_ids) if not m.is_deleted)
        return found[:limit]

    @bounded
    async def soft_delete_message(self, message_id: str) -> bool:
        return await self._update_if_exists(
            REDIS_MESSAGE_KEY.format(message_id=message_id),
            {"is_deleted": True},
            drop_fields=["content"],
        )

    @bounded
    async def session_message_times(self, session_id: str, since: datetime) -> list[float]:
        """Creation times (POSIX seconds, oldest first) of a session's messages after `since`."""
        rows = await self.redis_client.zrangebyscore(
            REDIS_SESSION_MESSAGES_KEY.format(session_id=session_id),
            f"({since.timestamp()}",
            "+inf",
            withscores=True,
        )
        return [score for _, score in rows]
