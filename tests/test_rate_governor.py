import pytest

from errors import RateLimited
from models import MessageType
from services.rate_governor import RateGovernor, SlidingWindowLimiter


def test_limiter_admits_up_to_max_then_rejects(clock):
    limiter = SlidingWindowLimiter(3, 60, clock=clock)

    assert [limiter.hit("1.2.3.4").count for _ in range(3)] == [1, 2, 3]
    clock.advance(seconds=20)
    with pytest.raises(RateLimited) as exc:
        limiter.hit("1.2.3.4")
    assert exc.value.code == "RATE_LIMIT_EXCEEDED"
    assert exc.value.retry_after == 40

    # Other callers are unaffected
    assert limiter.hit("5.6.7.8").count == 1


def test_limiter_window_resets_exactly_at_reset_time(clock):
    limiter = SlidingWindowLimiter(1, 60, clock=clock)
    limiter.hit("k")
    reset_at = limiter.reset_at("k")

    clock.now = reset_at - (reset_at - clock()) / 60
    with pytest.raises(RateLimited):
        limiter.hit("k")

    clock.now = reset_at
    bucket = limiter.hit("k")
    assert bucket.count == 1
    assert limiter.reset_at("k") > reset_at


def test_limiter_purge_evicts_elapsed_buckets(clock):
    limiter = SlidingWindowLimiter(5, 60, clock=clock)
    limiter.hit("old")
    clock.advance(seconds=30)
    limiter.hit("new")
    clock.advance(seconds=30)

    assert limiter.purge() == 1
    assert len(limiter) == 1
    assert limiter.reset_at("old") is None


def test_room_creation_is_limited_per_caller(engine):
    for _ in range(3):
        engine.governor.admit_room_creation("10.0.0.1")
    with pytest.raises(RateLimited):
        engine.governor.admit_room_creation("10.0.0.1")
    engine.governor.admit_room_creation("10.0.0.2")


@pytest.mark.asyncio
async def test_eleventh_message_in_a_minute_is_rejected(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    identity = await engine.sessions.validate(joined["sessionToken"])

    for i in range(10):
        await engine.messages.send(identity, MessageType.TEXT, f"message {i}")
        clock.advance(seconds=1)

    with pytest.raises(RateLimited) as exc:
        await engine.messages.send(identity, MessageType.TEXT, "one too many")
    assert exc.value.code == "RATE_LIMIT_EXCEEDED"
    assert exc.value.retry_after == 50

    clock.advance(seconds=50)
    await engine.messages.send(identity, MessageType.TEXT, "allowed again")


@pytest.mark.asyncio
async def test_message_quota_survives_fresh_governor(engine, room, clock):
    joined = await engine.sessions.join(room.id, "Alice")
    identity = await engine.sessions.validate(joined["sessionToken"])
    for i in range(10):
        await engine.messages.send(identity, MessageType.TEXT, f"message {i}")

    # A new governor has empty buckets, as after a reconnect or restart
    governor = RateGovernor(engine.backend, messages_per_minute=10, clock=clock)
    with pytest.raises(RateLimited):
        await governor.admit_message(identity.session_id)
