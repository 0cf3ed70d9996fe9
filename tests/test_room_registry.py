from datetime import timedelta

import pytest

from engine import build_engine
from errors import AtCapacity, Conflict, Expired, NotFound, ValidationFailed
from models import MessageType, Room, is_expired
from services.room_registry import RoomRegistry, TOKEN_PREFIX


def test_is_expired_predicate(clock):
    now = clock()
    room = Room(id="r1", token="ghost-aaaaaaaa", created_at=now, expires_at=now + timedelta(hours=1))
    assert not is_expired(room, now)
    assert is_expired(room, now + timedelta(hours=1))
    room.is_active = False
    assert is_expired(room, now)


@pytest.mark.asyncio
async def test_create_room_defaults(engine, clock):
    room = await engine.registry.create(ttl_hours=2)

    assert room.token.startswith(TOKEN_PREFIX)
    assert len(room.token) == len(TOKEN_PREFIX) + 8
    assert room.is_active
    assert not room.is_public
    assert room.expires_at == clock() + timedelta(hours=2)
    assert await engine.backend.get_room_by_token(room.token) == room


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [-1, 10_000])
async def test_create_room_rejects_bad_ttl(engine, ttl):
    with pytest.raises(ValidationFailed) as exc:
        await engine.registry.create(ttl_hours=ttl)
    assert exc.value.code == "INVALID_TTL"


@pytest.mark.asyncio
async def test_create_retries_on_token_collision(engine, clock):
    tokens = iter(["ghost-aaaaaaaa", "ghost-aaaaaaaa", "ghost-bbbbbbbb"])
    registry = RoomRegistry(engine.backend, clock=clock, token_factory=lambda: next(tokens))

    first = await registry.create(ttl_hours=1)
    second = await registry.create(ttl_hours=1)

    assert first.token == "ghost-aaaaaaaa"
    assert second.token == "ghost-bbbbbbbb"


@pytest.mark.asyncio
async def test_create_gives_up_after_repeated_collisions(engine, clock):
    registry = RoomRegistry(engine.backend, clock=clock, token_factory=lambda: "ghost-samesame")
    await registry.create(ttl_hours=1)

    with pytest.raises(Conflict) as exc:
        await registry.create(ttl_hours=1)
    assert exc.value.code == "TOKEN_COLLISION"


@pytest.mark.asyncio
async def test_validate_unknown_room(engine):
    with pytest.raises(NotFound) as exc:
        await engine.registry.validate("ghost-missing0")
    assert exc.value.code == "ROOM_NOT_FOUND"


@pytest.mark.asyncio
async def test_validate_expired_room_deactivates_it(engine, room, clock):
    clock.advance(hours=1, seconds=1)

    with pytest.raises(Expired) as exc:
        await engine.registry.validate(room.token)
    assert exc.value.code == "ROOM_EXPIRED"

    stored = await engine.backend.get_room(room.id)
    assert stored.is_active is False

    # Terminal from now on
    with pytest.raises(Expired) as exc:
        await engine.registry.validate(room.token)
    assert exc.value.code == "ROOM_INACTIVE"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "active, expired, sessions, usable",
    [
        (True, False, 0, True),
        (True, False, 1, True),
        (True, False, 2, False),
        (True, True, 0, False),
        (False, False, 0, False),
        (False, True, 1, False),
    ],
)
async def test_validate_succeeds_only_for_usable_rooms_below_capacity(redis_client, clock, active, expired, sessions, usable):
    engine = build_engine(redis_client, clock=clock, max_capacity=2)
    room = await engine.registry.create(ttl_hours=1)
    for i in range(sessions):
        await engine.sessions.join(room.id, f"user{i}")
    if not active:
        await engine.backend.deactivate_room(room.id)
    if expired:
        clock.advance(hours=2)

    if usable:
        assert await engine.registry.validate(room.token) == room.id
    else:
        with pytest.raises((Expired, AtCapacity)):
            await engine.registry.validate(room.token)


@pytest.mark.asyncio
async def test_room_full(redis_client, clock):
    engine = build_engine(redis_client, clock=clock, max_capacity=1)
    room = await engine.registry.create(ttl_hours=1)
    await engine.sessions.join(room.id, "Alice")

    with pytest.raises(AtCapacity) as exc:
        await engine.registry.validate(room.token)
    assert exc.value.code == "ROOM_FULL"


@pytest.mark.asyncio
async def test_get_info_counts_sessions(engine, room):
    await engine.sessions.join(room.id, "Alice")
    await engine.sessions.join(room.id, "Bob")

    info = await engine.registry.get_info(room.token)

    assert info["token"] == room.token
    assert info["name"] == "Lobby"
    assert info["participantCount"] == 2


@pytest.mark.asyncio
async def test_list_public_only_lists_usable_public_rooms(engine, clock):
    public = await engine.registry.create(ttl_hours=1, name="open", is_public=True)
    await engine.registry.create(ttl_hours=1, name="hidden", is_public=False)
    short = await engine.registry.create(ttl_hours=0.5, name="short", is_public=True)
    await engine.sessions.join(public.id, "Alice")

    listed = await engine.registry.list_public()
    assert {r["token"] for r in listed} == {public.token, short.token}
    assert next(r for r in listed if r["token"] == public.token)["participantCount"] == 1

    clock.advance(minutes=45)
    listed = await engine.registry.list_public()
    assert [r["token"] for r in listed] == [public.token]


@pytest.mark.asyncio
async def test_observed_expiry_is_permanent(engine, room, clock):
    clock.advance(hours=2)
    with pytest.raises(Expired):
        await engine.registry.validate(room.token)

    # Even if the clock went backwards the room stays gone
    clock.advance(hours=-2)
    assert room.token not in [r["token"] for r in await engine.registry.list_public()]
    with pytest.raises(Expired):
        await engine.registry.get_info(room.token)


@pytest.mark.asyncio
async def test_deactivate_is_idempotent_and_drops_sessions(engine, room):
    joined = await engine.sessions.join(room.id, "Alice")

    await engine.registry.deactivate(room.id)
    await engine.registry.deactivate(room.id)

    assert await engine.backend.count_room_sessions(room.id) == 0
    assert await engine.backend.get_session_by_token(joined["sessionToken"]) is None
    assert (await engine.backend.get_room(room.id)).is_active is False


@pytest.mark.asyncio
async def test_deactivate_unknown_room_does_not_create_it(engine):
    await engine.registry.deactivate("does-not-exist")
    assert await engine.backend.get_room("does-not-exist") is None


@pytest.mark.asyncio
async def test_purge_expired_cascades(engine, room, clock):
    identity_token = (await engine.sessions.join(room.id, "Alice"))["sessionToken"]
    identity = await engine.sessions.validate(identity_token)
    message = await engine.messages.send(identity, MessageType.TEXT, "hello")
    keep = await engine.registry.create(ttl_hours=5)

    clock.advance(hours=1)
    purged = await engine.registry.purge_expired()

    assert purged == [room.id]
    assert await engine.backend.get_room(room.id) is None
    assert await engine.backend.get_room_by_token(room.token) is None
    assert await engine.backend.get_session_by_token(identity_token) is None
    assert await engine.backend.get_message(message.id) is None
    assert await engine.backend.get_room(keep.id) is not None


@pytest.mark.asyncio
async def test_expiring_within(engine, clock):
    soon = await engine.registry.create(ttl_hours=1)
    await engine.registry.create(ttl_hours=3)
    inactive = await engine.registry.create(ttl_hours=1)
    await engine.registry.deactivate(inactive.id)

    clock.advance(minutes=56)
    expiring = await engine.registry.expiring_within(300)

    assert [r.id for r in expiring] == [soon.id]


@pytest.mark.asyncio
async def test_create_strips_unsafe_room_names(engine):
    room = await engine.registry.create(ttl_hours=1, name="  Book club <script>alert(1)</script>")
    blank = await engine.registry.create(ttl_hours=1, name="<script>x</script>")

    assert room.name == "Book club"
    assert blank.name is None
