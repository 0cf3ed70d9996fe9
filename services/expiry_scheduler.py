import math
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from constants import CLEANUP_INTERVAL_SECONDS, TTL_WARNING_INTERVAL_SECONDS, TTL_WARNING_WINDOW_SECONDS
from logging_config import get_logger
from services.dispatcher import EventDispatcher
from services.rate_governor import RateGovernor
from services.room_registry import RoomRegistry
from services.session_manager import SessionManager

logger = get_logger(__name__)


class ExpiryScheduler:
    """Periodic cleanup sweep plus a faster "room expiring soon" warning pass.

    Both run as interval jobs on an AsyncIOScheduler. A failing run is logged
    and the job fires again on its next interval.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        sessions: SessionManager,
        governor: RateGovernor,
        dispatcher: EventDispatcher,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        warning_interval: float = TTL_WARNING_INTERVAL_SECONDS,
        warning_window: int = TTL_WARNING_WINDOW_SECONDS,
    ):
        self.registry = registry
        self.sessions = sessions
        self.governor = governor
        self.dispatcher = dispatcher
        self.cleanup_interval = cleanup_interval
        self.warning_interval = warning_interval
        self.warning_window = warning_window
        self._scheduler: Optional[AsyncIOScheduler] = None

    async def run_cleanup(self) -> dict:
        logger.info("Starting cleanup sweep")
        room_ids = await self.registry.purge_expired()
        for room_id in room_ids:
            self.dispatcher.close_room(room_id, "Room has expired")

        sessions = await self.sessions.purge_inactive()
        for session in sessions:
            self.dispatcher.evict_session(session)

        buckets = self.governor.purge()
        logger.info(f"Cleanup sweep done: rooms={len(room_ids)}, sessions={len(sessions)}, rate_buckets={buckets}")
        return {"rooms": len(room_ids), "sessions": len(sessions), "rateBuckets": buckets}

    async def run_ttl_warnings(self) -> int:
        now = self.registry.clock()
        warned = 0
        for room in await self.registry.expiring_within(self.warning_window):
            expires_in = math.floor((room.expires_at - now).total_seconds())
            if expires_in <= 0:
                continue
            listeners = self.dispatcher.warn_expiring(room, expires_in)
            logger.debug(f"TTL warning for room {room.id}: {expires_in}s left, {listeners} listeners")
            warned += 1
        return warned

    async def _guarded(self, name: str, tick: Callable[[], Awaitable]):
        try:
            await tick()
        except Exception as e:
            logger.error(f"{name} run failed: {e}", exc_info=True)

    def start(self):
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._guarded,
            IntervalTrigger(seconds=self.cleanup_interval),
            args=["Cleanup", self.run_cleanup],
            id="room_cleanup",
            name="Expired Room and Session Cleanup",
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.add_job(
            self._guarded,
            IntervalTrigger(seconds=self.warning_interval),
            args=["TTL warning", self.run_ttl_warnings],
            id="ttl_warnings",
            name="Room TTL Warnings",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Expiry scheduler started: cleanup every {self.cleanup_interval}s, "
            f"TTL warnings every {self.warning_interval}s"
        )

    async def stop(self):
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Expiry scheduler stopped")
