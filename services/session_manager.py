import re
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from backend import RedisBackend, SeatClaim
from constants import ROOM_MAX_CAPACITY, SESSION_INACTIVE_MINUTES
from errors import AtCapacity, Conflict, Expired, InvalidSession, NotFound, ValidationFailed
from logging_config import get_logger
from models import Session, is_expired, utcnow

logger = get_logger(__name__)

SESSION_TOKEN_ALPHABET = string.ascii_letters + string.digits
SESSION_TOKEN_LENGTH = 32  # ~190 bits

NICKNAME_MIN_LENGTH = 2
NICKNAME_MAX_LENGTH = 20
NICKNAME_PATTERN = re.compile(r"^[A-Za-z0-9 ._-]+$")


def generate_session_token() -> str:
    return "".join(secrets.choice(SESSION_TOKEN_ALPHABET) for _ in range(SESSION_TOKEN_LENGTH))


def normalize_nickname(nickname: Optional[str]) -> str:
    """Trim and check a nickname, raising INVALID_NICKNAME when it is unusable."""
    nickname = (nickname or "").strip()
    if not nickname:
        raise ValidationFailed("Nickname cannot be empty", "INVALID_NICKNAME")
    if not NICKNAME_MIN_LENGTH <= len(nickname) <= NICKNAME_MAX_LENGTH:
        raise ValidationFailed(
            f"Nickname must be between {NICKNAME_MIN_LENGTH} and {NICKNAME_MAX_LENGTH} characters",
            "INVALID_NICKNAME",
        )
    if not NICKNAME_PATTERN.match(nickname):
        raise ValidationFailed(
            "Nickname can only contain letters, numbers, spaces, dots, underscores, and hyphens",
            "INVALID_NICKNAME",
        )
    return nickname


class SessionIdentity(NamedTuple):
    session_id: str
    room_id: str
    nickname: str


class SessionManager:
    """Issues and checks the per-participant bearer tokens of a room."""

    def __init__(
        self,
        backend: RedisBackend,
        inactive_minutes: int = SESSION_INACTIVE_MINUTES,
        clock: Callable[[], datetime] = utcnow,
        max_capacity: int = ROOM_MAX_CAPACITY,
    ):
        self.backend = backend
        self.inactive_minutes = inactive_minutes
        self.max_capacity = max_capacity
        self.clock = clock

    async def join(self, room_id: str, nickname: str) -> dict:
        nickname = normalize_nickname(nickname)

        room = await self.backend.get_room(room_id)
        if room is None:
            raise NotFound("Room not found", "ROOM_NOT_FOUND")
        if is_expired(room, self.clock()):
            raise Expired("Room is no longer active", "ROOM_EXPIRED")

        now = self.clock()
        session = Session(
            id=uuid.uuid4().hex,
            room_id=room_id,
            nickname=nickname,
            session_token=generate_session_token(),
            created_at=now,
            last_active_at=now,
        )
        claim = await self.backend.create_session(session, max_capacity=self.max_capacity)
        if claim == SeatClaim.NICKNAME_TAKEN:
            logger.warning(f"Nickname '{nickname}' already in use in room {room_id}")
            raise Conflict("Nickname is already in use in this room", "NICKNAME_IN_USE")
        if claim == SeatClaim.ROOM_FULL:
            logger.warning(f"Room {room_id} is full, {nickname} turned away")
            raise AtCapacity("Room is at maximum capacity", "ROOM_FULL")

        logger.info(f"Session {session.id} ({nickname}) joined room {room_id}")
        return {
            "sessionToken": session.session_token,
            "nickname": session.nickname,
            "roomToken": room.token,
        }

    async def validate(self, session_token: Optional[str]) -> SessionIdentity:
        """Single authority for whether a caller may still act.

        Refreshes last activity on success. A session removed concurrently
        (leave, sweep) resolves to INVALID_SESSION.
        """
        if not session_token:
            raise InvalidSession("Invalid session", "INVALID_SESSION")
        session = await self.backend.get_session_by_token(session_token)
        if session is None:
            raise InvalidSession("Invalid session", "INVALID_SESSION")

        room = await self.backend.get_room(session.room_id)
        if room is None or is_expired(room, self.clock()):
            await self.backend.delete_session(session.id)
            logger.info(f"Session {session.id} dropped, room {session.room_id} is no longer active")
            raise Expired("Room is no longer active", "ROOM_EXPIRED")

        if not await self.backend.touch_session(session.id, self.clock()):
            raise InvalidSession("Invalid session", "INVALID_SESSION")
        return SessionIdentity(session.id, session.room_id, session.nickname)

    async def remove(self, session_token: str) -> Optional[Session]:
        session = await self.backend.get_session_by_token(session_token)
        if session is None:
            return None
        removed = await self.backend.delete_session(session.id)
        if removed is not None:
            logger.info(f"Session {removed.id} ({removed.nickname}) removed from room {removed.room_id}")
        return removed

    async def room_sessions(self, room_id: str) -> list[Session]:
        return await self.backend.find_room_sessions(room_id)

    async def purge_inactive(self, minutes: Optional[int] = None) -> list[Session]:
        minutes = self.inactive_minutes if minutes is None else minutes
        cutoff = self.clock() - timedelta(minutes=minutes)
        removed = []
        for session_id in await self.backend.find_inactive_session_ids(cutoff):
            session = await self.backend.delete_session(session_id, inactive_before=cutoff)
            if session is not None:
                removed.append(session)
        if removed:
            logger.info(f"Purged {len(removed)} sessions inactive for over {minutes} minutes")
        return removed
