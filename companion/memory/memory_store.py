"""Companion memory store: validated writes, hybrid-ranked retrieval, decay.

Architectural role:
    Sits between the generation coordinator and a `MemoryRepository` backend.
    The store owns every rule about memories (validation, expiry, ranking,
    access bookkeeping, importance decay); backends only persist rows.

Retrieval flow:
    1. Ask the repository for `(memory, cosine)` pairs of the companion.
    2. Drop expired memories (soft expiry; rows stay until `purge_expired`).
    3. Score with `companion.memory.scoring` and rank deterministically.
    4. Take the top `k`, bump `access_count`/`last_accessed_at` on all of them,
       persist the bump, and return the updated copies.

Concurrency:
    Public methods are coroutines. Repository calls run in `asyncio.to_thread`
    so file-backed backends never block the event loop.

Failure handling:
    Backend errors are raised as `StorageFailure`. Callers decide whether to
    degrade; the store never swallows them.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any

from companion.config import RetrievalSettings
from companion.errors import StorageFailure, ValidationError
from companion.memory.models import Memory
from companion.memory.repositories import MemoryRepository
from companion.memory.scoring import rank, score_candidates


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """Per-companion memory persistence and ranked recall."""

    def __init__(
        self,
        repository: MemoryRepository,
        settings: RetrievalSettings | None = None,
        dimension: int | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or RetrievalSettings()
        self.dimension = dimension

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (StorageFailure, ValidationError):
            raise
        except Exception as exc:
            raise StorageFailure(f"Memory backend error: {exc}") from exc

    def _validate_embedding(self, embedding) -> tuple[float, ...]:
        try:
            vector = tuple(float(x) for x in embedding)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Embedding must be a sequence of numbers") from exc

        if not vector:
            raise ValidationError("Embedding must not be empty")
        if not all(math.isfinite(x) for x in vector):
            raise ValidationError("Embedding contains non-finite values")
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding dimension {len(vector)} does not match {self.dimension}"
            )
        return vector

    async def write(
        self,
        companion_id: str,
        content: str,
        embedding,
        metadata: dict[str, Any] | None = None,
        importance: float = 1.0,
        category: str | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> Memory:
        """Insert one memory atomically.

        Raises:
            ValidationError: Empty content, negative importance, bad embedding.
            StorageFailure: Backend insert failed; nothing was written.
        """
        if not content or not content.strip():
            raise ValidationError("Memory content must not be empty")
        if importance is None or not math.isfinite(importance) or importance < 0:
            raise ValidationError("Memory importance must be a finite value >= 0")

        memory = Memory(
            id=uuid.uuid4().hex,
            companion_id=companion_id,
            content=content.strip(),
            embedding=self._validate_embedding(embedding),
            created_at=now or utcnow(),
            importance=float(importance),
            category=category,
            metadata=dict(metadata or {}),
            expires_at=expires_at,
        )

        await self._call(self.repository.insert, memory)
        logger.debug("Memory %s written for companion %s", memory.id, companion_id)
        return memory

    async def retrieve(
        self,
        companion_id: str,
        query_embedding,
        k: int | None = None,
        now: datetime | None = None,
    ) -> list[Memory]:
        """Return the top-`k` non-expired memories, most relevant first.

        Every returned memory has its access count incremented and its
        last-accessed time set to `now`; the returned objects carry the update.
        """
        k = self.settings.default_k if k is None else k
        if k <= 0:
            return []

        now = now or utcnow()
        query = self._validate_embedding(query_embedding)

        candidates = await self._call(self.repository.search, companion_id, query)
        live = [(memory, sim) for memory, sim in candidates if not memory.is_expired(now)]

        ranked = rank(score_candidates(live, now, self.settings))[:k]
        touched = [scored.memory.with_access(now) for scored in ranked]

        if touched:
            await self._call(self.repository.update, companion_id, touched)

        return touched

    async def decay(
        self,
        companion_id: str,
        now: datetime | None = None,
        factor: float | None = None,
        floor: float | None = None,
    ) -> int:
        """Down-weight memories untouched for longer than tau.

        Importance is multiplied by `factor` but never pushed below `floor`;
        memories already at or below the floor are left alone.

        Returns:
            Number of memories whose importance changed.
        """
        now = now or utcnow()
        factor = self.settings.decay_factor if factor is None else factor
        floor = self.settings.importance_floor if floor is None else floor
        if not 0 < factor < 1:
            raise ValidationError("Decay factor must be in (0, 1)")

        memories = await self._call(self.repository.all_for, companion_id)

        changed = []
        for memory in memories:
            idle = (now - memory.last_touched_at).total_seconds()
            if idle <= self.settings.tau_seconds or memory.importance <= floor:
                continue
            changed.append(memory.with_importance(max(floor, memory.importance * factor)))

        if changed:
            await self._call(self.repository.update, companion_id, changed)
            logger.info("Decayed %d memories for companion %s", len(changed), companion_id)
        return len(changed)

    async def purge_expired(self, companion_id: str, now: datetime | None = None) -> int:
        now = now or utcnow()
        memories = await self._call(self.repository.all_for, companion_id)
        expired = [m.id for m in memories if m.is_expired(now)]
        if not expired:
            return 0
        removed = await self._call(self.repository.delete, companion_id, expired)
        logger.info("Purged %d expired memories for companion %s", removed, companion_id)
        return removed

    async def delete_all(self, companion_id: str) -> int:
        return await self._call(self.repository.delete_all, companion_id)

    async def count(self, companion_id: str) -> int:
        return await self._call(self.repository.count, companion_id)
