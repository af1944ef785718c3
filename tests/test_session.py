"""
Session locks and cancellation tokens.
"""

import asyncio

import pytest

from companion.core.session import (
    CancellationToken,
    GenerationSession,
    InProcessSessionLocks,
    RedisSessionLocks,
    SessionState,
)


class FakeRedis:
    """Just enough of `redis.asyncio.Redis` for SET NX EX and the release script."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_in_process_lock_is_exclusive_per_companion():
    locks = InProcessSessionLocks()

    token = await locks.try_acquire("c1")
    assert token is not None
    assert await locks.try_acquire("c1") is None
    assert await locks.try_acquire("c2") is not None

    assert await locks.release("c1", "not-the-owner") is False
    assert locks.is_held("c1")
    assert await locks.release("c1", token) is True
    assert await locks.try_acquire("c1") is not None


@pytest.mark.asyncio
async def test_in_process_lock_admits_one_of_many_concurrent_callers():
    locks = InProcessSessionLocks()

    tokens = await asyncio.gather(*(locks.try_acquire("c1") for _ in range(10)))

    assert sum(t is not None for t in tokens) == 1


@pytest.mark.asyncio
async def test_redis_lock_uses_token_and_ttl():
    locks = RedisSessionLocks("redis://unused", ttl_seconds=90)
    fake = FakeRedis()
    locks._redis = fake

    token = await locks.try_acquire("c1")

    assert fake.values["companion:session:c1"] == token
    assert fake.ttls["companion:session:c1"] == 90
    assert await locks.try_acquire("c1") is None
    assert await locks.release("c1", "stale-token") is False
    assert await locks.release("c1", token) is True
    assert await locks.try_acquire("c1") is not None

    await locks.close()
    assert fake.closed


@pytest.mark.asyncio
async def test_cancellation_token_wakes_waiters_and_keeps_first_reason():
    token = CancellationToken()
    waiter = asyncio.ensure_future(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel("client disconnected")
    token.cancel("second reason")
    await asyncio.wait_for(waiter, timeout=1)

    assert token.cancelled
    assert token.reason == "client disconnected"


def test_session_starts_generating_and_transitions():
    session = GenerationSession(companion_id="c1", lock_token="t", cancellation=CancellationToken())

    assert session.state == SessionState.GENERATING
    session.transition(SessionState.COMPLETING)
    assert session.state == SessionState.COMPLETING
    assert session.turn_id
