import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from backend import RedisBackend
from constants import MAX_ROOM_TTL_HOURS, ROOM_MAX_CAPACITY, ROOM_TTL_HOURS, TOKEN_GENERATION_ATTEMPTS
from errors import AtCapacity, Conflict, Expired, NotFound, ValidationFailed
from logging_config import get_logger
from models import Room, is_expired, to_iso, utcnow
from sanitize import strip_unsafe

logger = get_logger(__name__)

TOKEN_PREFIX = "ghost-"
TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_LENGTH = 8


def generate_room_token() -> str:
    # e.g. "ghost-k3v9qa1z": short enough to read out loud, safe in a URL
    return TOKEN_PREFIX + "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


class RoomRegistry:
    """Authoritative set of rooms: creation, validity, capacity and listing."""

    def __init__(
        self,
        backend: RedisBackend,
        max_capacity: int = ROOM_MAX_CAPACITY,
        default_ttl_hours: float = ROOM_TTL_HOURS,
        max_ttl_hours: float = MAX_ROOM_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_room_token,
    ):
        self.backend = backend
        self.max_capacity = max_capacity
        self.default_ttl_hours = default_ttl_hours
        self.max_ttl_hours = max_ttl_hours
        self.clock = clock
        self.token_factory = token_factory

    async def create(self, ttl_hours: Optional[float] = None, name: Optional[str] = None, is_public: bool = False) -> Room:
        ttl_hours = ttl_hours or self.default_ttl_hours
        if ttl_hours <= 0 or ttl_hours > self.max_ttl_hours:
            raise ValidationFailed(f"ttlHours must be between 0 and {self.max_ttl_hours:g}", "INVALID_TTL")
        name = strip_unsafe(name) or None

        now = self.clock()
        for attempt in range(1, TOKEN_GENERATION_ATTEMPTS + 1):
            room = Room(
                id=uuid.uuid4().hex,
                token=self.token_factory(),
                name=name,
                is_public=is_public,
                is_active=True,
                created_at=now,
                expires_at=now + timedelta(hours=ttl_hours),
            )
            if await self.backend.create_room(room):
                logger.info(f"Room {room.id} created: token={room.token}, public={is_public}, expires_at={to_iso(room.expires_at)}")
                return room
            logger.warning(f"Room token collision on attempt {attempt}, regenerating")
        raise Conflict("Could not allocate a unique room token", "TOKEN_COLLISION")

    async def _load_usable(self, token: str) -> Room:
        room = await self.backend.get_room_by_token(token)
        if room is None:
            raise NotFound("Room not found", "ROOM_NOT_FOUND")
        if not room.is_active:
            raise Expired("Room is no longer active", "ROOM_INACTIVE")
        if is_expired(room, self.clock()):
            # Lazy expiry: the sweep may not have run yet
            await self.deactivate(room.id)
            raise Expired("Room has expired", "ROOM_EXPIRED")
        return room

    async def validate(self, token: str) -> str:
        """Return the room id if the room can accept another participant."""
        room = await self._load_usable(token)
        session_count = await self.backend.count_room_sessions(room.id)
        if session_count >= self.max_capacity:
            logger.info(f"Room {room.id} is full ({session_count}/{self.max_capacity})")
            raise AtCapacity("Room is at maximum capacity", "ROOM_FULL")
        return room.id

    async def get_info(self, token: str) -> dict:
        room = await self._load_usable(token)
        participant_count = await self.backend.count_room_sessions(room.id)
        return {
            "token": room.token,
            "name": room.name,
            "isPublic": room.is_public,
            "participantCount": participant_count,
            "expiresAt": to_iso(room.expires_at),
            "createdAt": to_iso(room.created_at),
        }

    async def get(self, room_id: str) -> Optional[Room]:
        return await self.backend.get_room(room_id)

    async def list_public(self) -> list[dict]:
        now = self.clock()
        listed = []
        for room in await self.backend.find_public_rooms():
            if is_expired(room, now):
                continue
            listed.append({
                "token": room.token,
                "name": room.name,
                "participantCount": await self.backend.count_room_sessions(room.id),
                "expiresAt": to_iso(room.expires_at),
                "createdAt": to_iso(room.created_at),
            })
        return listed

    async def deactivate(self, room_id: str):
        """Idempotent; also drops every session of the room."""
        await self.backend.deactivate_room(room_id)
        sessions = await self.backend.delete_room_sessions(room_id)
        logger.info(f"Room {room_id} deactivated, {len(sessions)} sessions removed")
        return sessions

    async def expiring_within(self, seconds: int) -> list[Room]:
        now = self.clock()
        rooms = await self.backend.find_rooms_expiring_between(now, now + timedelta(seconds=seconds))
        return [room for room in rooms if room.is_active]

    async def purge_expired(self) -> list[str]:
        """Hard-delete every room whose expiry has passed, active or not."""
        room_ids = await self.backend.find_expired_room_ids(self.clock())
        for room_id in room_ids:
            await self.backend.delete_room(room_id)
        if room_ids:
            logger.info(f"Purged {len(room_ids)} expired rooms")
        return room_ids
