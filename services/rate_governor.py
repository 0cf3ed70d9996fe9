import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from backend import RedisBackend
from constants import RATE_LIMIT_MESSAGES_PER_MINUTE, RATE_LIMIT_ROOM_CREATE_PER_HOUR
from errors import RateLimited
from logging_config import get_logger
from models import utcnow

logger = get_logger(__name__)


@dataclass
class Bucket:
    count: int
    window_reset_at: datetime


class SlidingWindowLimiter:
    """In-memory counter per key; a bucket lives for one window."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], datetime] = utcnow):
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self._buckets: dict[str, Bucket] = {}

    def hit(self, key: str) -> Bucket:
        now = self.clock()
        bucket = self._buckets.get(key)
        if bucket is None or bucket.window_reset_at <= now:
            bucket = Bucket(count=1, window_reset_at=now + self.window)
            self._buckets[key] = bucket
            return bucket
        if bucket.count < self.max_requests:
            bucket.count += 1
            return bucket
        retry_after = math.ceil((bucket.window_reset_at - now).total_seconds())
        raise RateLimited("Too many requests, please try again later", retry_after)

    def reset_at(self, key: str) -> Optional[datetime]:
        bucket = self._buckets.get(key)
        return bucket.window_reset_at if bucket else None

    def purge(self) -> int:
        now = self.clock()
        elapsed = [key for key, bucket in self._buckets.items() if bucket.window_reset_at <= now]
        for key in elapsed:
            del self._buckets[key]
        return len(elapsed)

    def __len__(self):
        return len(self._buckets)


class RateGovernor:
    """Admission control for room creation (per caller) and messages (per session)."""

    def __init__(
        self,
        backend: RedisBackend,
        messages_per_minute: int = RATE_LIMIT_MESSAGES_PER_MINUTE,
        rooms_per_hour: int = RATE_LIMIT_ROOM_CREATE_PER_HOUR,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.clock = clock
        self.message_window_seconds = 60
        self.room_creation = SlidingWindowLimiter(rooms_per_hour, 3600, clock=clock)
        self.messages = SlidingWindowLimiter(messages_per_minute, self.message_window_seconds, clock=clock)

    def admit_room_creation(self, caller: str):
        try:
            self.room_creation.hit(caller)
        except RateLimited:
            logger.warning(f"Room creation rate limit hit for {caller}")
            raise

    async def admit_message(self, session_id: str):
        """Reject once the session used its quota in the trailing window.

        The durable history is checked as well as the in-memory bucket, so a
        reconnect or a restart does not hand out a fresh quota.
        """
        now = self.clock()
        window = timedelta(seconds=self.message_window_seconds)
        sent_at = await self.backend.session_message_times(session_id, now - window)
        if len(sent_at) >= self.messages.max_requests:
            oldest = datetime.fromtimestamp(sent_at[0], tz=now.tzinfo)
            retry_after = max(1, math.ceil((oldest + window - now).total_seconds()))
            logger.warning(f"Message rate limit hit for session {session_id} ({len(sent_at)} in window)")
            raise RateLimited("You are sending messages too quickly. Please slow down.", retry_after)
        try:
            self.messages.hit(session_id)
        except RateLimited as e:
            logger.warning(f"Message rate limit hit for session {session_id}")
            raise RateLimited("You are sending messages too quickly. Please slow down.", e.retry_after) from e

    def purge(self) -> int:
        return self.room_creation.purge() + self.messages.purge()
