from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import redis.asyncio as redis

from backend import RedisBackend
from connections import ConnectionManager
from constants import (
    MAX_FILE_SIZE_MB,
    MAX_MESSAGE_LENGTH,
    PERSISTENCE_TIMEOUT_SECONDS,
    RATE_LIMIT_MESSAGES_PER_MINUTE,
    RATE_LIMIT_ROOM_CREATE_PER_HOUR,
    ROOM_MAX_CAPACITY,
    SESSION_INACTIVE_MINUTES,
)
from logging_config import get_logger
from models import utcnow
from services.dispatcher import EventDispatcher
from services.expiry_scheduler import ExpiryScheduler
from services.messages import MessageService
from services.presence import PresenceTracker
from services.rate_governor import RateGovernor
from services.room_registry import RoomRegistry
from services.session_manager import SessionManager

logger = get_logger(__name__)


@dataclass
class ChatEngine:
    backend: RedisBackend
    connections: ConnectionManager
    registry: RoomRegistry
    sessions: SessionManager
    governor: RateGovernor
    messages: MessageService
    presence: PresenceTracker
    dispatcher: EventDispatcher
    scheduler: ExpiryScheduler


def build_engine(
    redis_client: redis.Redis,
    clock: Callable[[], datetime] = utcnow,
    max_capacity: int = ROOM_MAX_CAPACITY,
    messages_per_minute: int = RATE_LIMIT_MESSAGES_PER_MINUTE,
    rooms_per_hour: int = RATE_LIMIT_ROOM_CREATE_PER_HOUR,
    max_message_length: int = MAX_MESSAGE_LENGTH,
    max_file_size_mb: int = MAX_FILE_SIZE_MB,
    session_inactive_minutes: int = SESSION_INACTIVE_MINUTES,
    persistence_timeout: float = PERSISTENCE_TIMEOUT_SECONDS,
) -> ChatEngine:
    """Construct every component once; they reference each other, never globals."""
    backend = RedisBackend(redis_client, timeout=persistence_timeout)
    connections = ConnectionManager()
    registry = RoomRegistry(backend, max_capacity=max_capacity, clock=clock)
    sessions = SessionManager(backend, inactive_minutes=session_inactive_minutes, clock=clock, max_capacity=max_capacity)
    governor = RateGovernor(backend, messages_per_minute=messages_per_minute, rooms_per_hour=rooms_per_hour, clock=clock)
    messages = MessageService(backend, governor, max_length=max_message_length, max_file_size_mb=max_file_size_mb, clock=clock)
    presence = PresenceTracker(connections)
    dispatcher = EventDispatcher(connections, presence, registry, sessions, messages)
    scheduler = ExpiryScheduler(registry, sessions, governor, dispatcher)
    logger.debug("Chat engine assembled")
    return ChatEngine(
        backend=backend,
        connections=connections,
        registry=registry,
        sessions=sessions,
        governor=governor,
        messages=messages,
        presence=presence,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )
