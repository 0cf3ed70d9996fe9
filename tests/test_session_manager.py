import asyncio
from datetime import timedelta

import pytest

from engine import build_engine
from errors import AtCapacity, Conflict, Expired, InvalidSession, NotFound, ValidationFailed
from redis_keys import REDIS_ROOM_NICKNAMES_KEY
from services.session_manager import SESSION_TOKEN_LENGTH, normalize_nickname


@pytest.mark.parametrize("nickname", ["", "   ", "a", "x" * 21, "bad!name", "<script>", None])
def test_invalid_nicknames(nickname):
    with pytest.raises(ValidationFailed) as exc:
        normalize_nickname(nickname)
    assert exc.value.code == "INVALID_NICKNAME"


@pytest.mark.parametrize("nickname, expected", [("  Bob  ", "Bob"), ("j.doe_2-x", "j.doe_2-x"), ("Ann Lee", "Ann Lee")])
def test_valid_nicknames_are_trimmed(nickname, expected):
    assert normalize_nickname(nickname) == expected


@pytest.mark.asyncio
async def test_join_issues_opaque_token(engine, room):
    joined = await engine.sessions.join(room.id, "  Alice ")

    assert joined["nickname"] == "Alice"
    assert joined["roomToken"] == room.token
    token = joined["sessionToken"]
    assert len(token) == SESSION_TOKEN_LENGTH
    assert token.isalnum()
    assert "alice" not in token.lower()
    assert room.token not in token


@pytest.mark.asyncio
async def test_join_rejects_case_insensitive_duplicate(engine, room):
    await engine.sessions.join(room.id, "Alice")

    with pytest.raises(Conflict) as exc:
        await engine.sessions.join(room.id, "ALICE")
    assert exc.value.code == "NICKNAME_IN_USE"


@pytest.mark.asyncio
async def test_same_nickname_in_different_rooms(engine, room):
    other = await engine.registry.create(ttl_hours=1)
    await engine.sessions.join(room.id, "Alice")
    assert (await engine.sessions.join(other.id, "Alice"))["nickname"] == "Alice"


@pytest.mark.asyncio
async def test_vacated_nickname_can_be_reused(engine, room):
    first = await engine.sessions.join(room.id, "Alice")
    await engine.sessions.remove(first["sessionToken"])

    second = await engine.sessions.join(room.id, "alice")
    assert second["nickname"] == "alice"


@pytest.mark.asyncio
async def test_concurrent_joins_with_same_nickname(engine, room):
    results = await asyncio.gather(
        engine.sessions.join(room.id, "Alice"),
        engine.sessions.join(room.id, "Alice"),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, Conflict)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == "NICKNAME_IN_USE"
    assert await engine.backend.count_room_sessions(room.id) == 1


@pytest.mark.asyncio
async def test_concurrent_joins_for_the_last_seat(redis_client, clock):
    engine = build_engine(redis_client, clock=clock, max_capacity=2)
    room = await engine.registry.create(ttl_hours=1)
    await engine.sessions.join(room.id, "Alice")

    results = await asyncio.gather(
        engine.sessions.join(room.id, "Bob"),
        engine.sessions.join(room.id, "Carol"),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, AtCapacity)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == "ROOM_FULL"
    assert await engine.backend.count_room_sessions(room.id) == 2
    # The turned-away nickname was not claimed
    loser = "Carol" if successes[0]["nickname"] == "Bob" else "Bob"
    assert await redis_client.hget(REDIS_ROOM_NICKNAMES_KEY.format(room_id=room.id), loser.lower()) is None


@pytest.mark.asyncio
async def test_join_unknown_or_expired_room(engine, room, clock):
    with pytest.raises(NotFound):
        await engine.sessions.join("nope", "Alice")

    clock.advance(hours=2)
    with pytest.raises(Expired):
        await engine.sessions.join(room.id, "Alice")


@pytest.mark.asyncio
async def test_validate_refreshes_activity(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    clock.advance(minutes=10)

    identity = await engine.sessions.validate(joined["sessionToken"])

    assert identity.room_id == room.id
    assert identity.nickname == "Alice"
    session = await engine.backend.get_session(identity.session_id)
    assert session.last_active_at == clock()


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "not-a-real-token"])
async def test_validate_unknown_token(engine, token):
    with pytest.raises(InvalidSession) as exc:
        await engine.sessions.validate(token)
    assert exc.value.code == "INVALID_SESSION"


@pytest.mark.asyncio
async def test_validate_after_remove(engine, room):
    joined = await engine.sessions.join(room.id, "Alice")
    await engine.sessions.remove(joined["sessionToken"])

    with pytest.raises(InvalidSession):
        await engine.sessions.validate(joined["sessionToken"])


@pytest.mark.asyncio
async def test_validate_in_expired_room_drops_session(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    clock.advance(hours=1)

    with pytest.raises(Expired) as exc:
        await engine.sessions.validate(joined["sessionToken"])
    assert exc.value.code == "ROOM_EXPIRED"
    assert await engine.backend.get_session_by_token(joined["sessionToken"]) is None


@pytest.mark.asyncio
async def test_refresh_does_not_resurrect_deleted_session(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    session = await engine.backend.get_session_by_token(joined["sessionToken"])
    await engine.backend.delete_session(session.id)

    assert await engine.backend.touch_session(session.id, clock()) is False
    assert await engine.backend.get_session(session.id) is None


@pytest.mark.asyncio
async def test_validate_racing_delete_is_invalid_session(engine, room):
    joined = await engine.sessions.join(room.id, "Alice")
    original_touch = engine.backend.touch_session

    async def delete_then_touch(session_id, now):
        await engine.backend.delete_session(session_id)
        return await original_touch(session_id, now)

    engine.backend.touch_session = delete_then_touch
    with pytest.raises(InvalidSession):
        await engine.sessions.validate(joined["sessionToken"])


@pytest.mark.asyncio
async def test_remove_is_idempotent(engine, room):
    joined = await engine.sessions.join(room.id, "Alice")

    assert (await engine.sessions.remove(joined["sessionToken"])).nickname == "Alice"
    assert await engine.sessions.remove(joined["sessionToken"]) is None


@pytest.mark.asyncio
async def test_room_sessions_in_join_order(engine, room, clock):
    await engine.sessions.join(room.id, "Alice")
    clock.advance(seconds=1)
    await engine.sessions.join(room.id, "Bob")

    assert [s.nickname for s in await engine.sessions.room_sessions(room.id)] == ["Alice", "Bob"]


@pytest.mark.asyncio
async def test_purge_inactive(engine, room, clock):
    idle = await engine.sessions.join(room.id, "Idle")
    busy = await engine.sessions.join(room.id, "Busy")

    clock.advance(minutes=20)
    await engine.sessions.validate(busy["sessionToken"])
    clock.advance(minutes=15)

    removed = await engine.sessions.purge_inactive()

    assert [s.nickname for s in removed] == ["Idle"]
    assert await engine.backend.get_session_by_token(idle["sessionToken"]) is None
    assert await engine.backend.get_session_by_token(busy["sessionToken"]) is not None
    # Nickname is free again
    await engine.sessions.join(room.id, "idle")


@pytest.mark.asyncio
async def test_inactive_delete_keeps_a_refreshed_session(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    session = await engine.backend.get_session_by_token(joined["sessionToken"])
    cutoff = clock() + timedelta(minutes=1)
    clock.advance(minutes=2)
    await engine.sessions.validate(joined["sessionToken"])

    assert await engine.backend.delete_session(session.id, inactive_before=cutoff) is None
    assert await engine.backend.get_session_by_token(joined["sessionToken"]) is not None


@pytest.mark.asyncio
async def test_purge_skips_session_refreshed_after_collection(engine, room, clock, monkeypatch):
    joined = await engine.sessions.join(room.id, "Alice")
    clock.advance(minutes=35)
    find_inactive = engine.backend.find_inactive_session_ids

    async def find_then_refresh(before):
        session_ids = await find_inactive(before)
        await engine.sessions.validate(joined["sessionToken"])
        return session_ids

    monkeypatch.setattr(engine.backend, "find_inactive_session_ids", find_then_refresh)

    assert await engine.sessions.purge_inactive() == []
    assert await engine.backend.get_session_by_token(joined["sessionToken"]) is not None
