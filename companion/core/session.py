"""Generation sessions, cancellation tokens and per-companion locks.

Architectural role:
    A `GenerationSession` is the exclusive execution context for one in-flight
    turn. Exclusivity comes from a `SessionLockManager`:
    - `InProcessSessionLocks`: a dictionary guarded by the event loop. Check and
      set happen without an intervening `await`, so acquisition is atomic for
      all coroutines of one process. Only correct for single-process
      deployments.
    - `RedisSessionLocks`: `SET key token NX EX ttl` plus a compare-and-delete
      Lua release, visible to every process sharing the Redis instance. The TTL
      frees locks of crashed workers; it must exceed the longest turn
      (`stream_timeout` plus commit time).

Acquisition is always non-blocking: a held lock is reported immediately and
never waited on.
"""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol


logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETING = "completing"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class GenerationSession:
    companion_id: str
    lock_token: str
    cancellation: CancellationToken
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.GENERATING

    def transition(self, state: SessionState) -> None:
        logger.debug(
            "Session %s for companion %s: %s -> %s",
            self.turn_id,
            self.companion_id,
            self.state.value,
            state.value,
        )
        self.state = state


class SessionLockManager(Protocol):

    async def try_acquire(self, companion_id: str) -> str | None:
        """Return an ownership token, or `None` when the lock is held."""
        ...

    async def release(self, companion_id: str, token: str) -> bool:
        ...


class InProcessSessionLocks:

    def __init__(self) -> None:
        self._held: dict[str, str] = {}

    async def try_acquire(self, companion_id: str) -> str | None:
        if companion_id in self._held:
            return None
        token = uuid.uuid4().hex
        self._held[companion_id] = token
        return token

    async def release(self, companion_id: str, token: str) -> bool:
        if self._held.get(companion_id) != token:
            logger.warning("Release of lock %s for companion %s by non-owner", token, companion_id)
            return False
        del self._held[companion_id]
        return True

    def is_held(self, companion_id: str) -> bool:
        return companion_id in self._held


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisSessionLocks:
    """Cross-process per-companion locks on Redis."""

    def __init__(self, redis_url: str, ttl_seconds: int = 180, prefix: str = "companion:session") -> None:
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._redis: Any = None

    def _key(self, companion_id: str) -> str:
        return f"{self.prefix}:{companion_id}"

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
        return self._redis

    async def try_acquire(self, companion_id: str) -> str | None:
        client = await self._client()
        token = uuid.uuid4().hex
        acquired = await client.set(self._key(companion_id), token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            return None
        logger.debug("Redis session lock acquired for companion %s", companion_id)
        return token

    async def release(self, companion_id: str, token: str) -> bool:
        client = await self._client()
        released = await client.eval(_RELEASE_SCRIPT, 1, self._key(companion_id), token)
        if not released:
            logger.warning("Redis session lock for companion %s expired or was taken over", companion_id)
        return bool(released)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
