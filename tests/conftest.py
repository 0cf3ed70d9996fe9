from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis

from connections import Connection
from engine import build_engine


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def drain(connection: Connection) -> list[tuple[str, dict]]:
    """Pop everything queued for a connection as (event, data) pairs."""
    events = []
    while not connection.outbox.empty():
        frame = connection.outbox.get_nowait()
        events.append((frame["event"], frame["data"]))
    return events


def events_named(events: list[tuple[str, dict]], name: str) -> list[dict]:
    return [data for event, data in events if event == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def engine(redis_client, clock):
    return build_engine(redis_client, clock=clock, max_capacity=10, messages_per_minute=10, rooms_per_hour=3)


@pytest_asyncio.fixture
async def room(engine):
    return await engine.registry.create(ttl_hours=1, name="Lobby", is_public=True)


@pytest.fixture
def connect(engine):
    def _connect() -> Connection:
        connection = Connection()
        engine.connections.register(connection)
        return connection

    return _connect


@pytest.fixture
def join(engine, connect):
    """Create a session over the HTTP path and attach a fresh connection to the room."""

    async def _join(room, nickname: str):
        session = await engine.sessions.join(room.id, nickname)
        connection = connect()
        await engine.dispatcher.dispatch(connection, "join_room", {
            "roomToken": room.token,
            "sessionToken": session["sessionToken"],
        })
        return connection, session["sessionToken"]

    return _join
