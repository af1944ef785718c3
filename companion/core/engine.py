"""Composition root and public facade of the companion engine.

Architectural role:
- `build_engine` constructs every component explicitly (repositories, memory
  store, registry, providers, session locks, coordinator). There are no
  module-level singletons; tests pass fakes for any dependency.
- `CompanionEngine` is the single entrypoint used by transports (HTTP, CLI) and
  by library callers.

Backend selection (`StorageSettings`):
- `backend="memory"`: in-process repositories (tests, development).
- `backend="file"`: `companions.json` plus per-companion FAISS memory indexes
  under `data_dir`.
- `lock_backend="local"`: in-process session locks (one process only).
- `lock_backend="redis"`: Redis locks shared by every worker.

Lifecycle operations:
- `remove_companion` cascades: memories first, then the companion record. It is
  refused with `Busy` while a turn is in flight.
- `run_maintenance` applies importance decay and purges expired memories.
"""

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Mapping

from companion.config import EngineSettings
from companion.core.coordinator import CommitFailureReporter, GenerationSessionCoordinator
from companion.core.models import ChatRequest, ChatResponse, ConversationTurn, StreamEvent
from companion.core.session import (
    CancellationToken,
    InProcessSessionLocks,
    RedisSessionLocks,
    SessionLockManager,
    SessionState,
)
from companion.errors import Busy, ValidationError
from companion.llm.service import GenerationProvider
from companion.memory.embedding_model import EmbeddingProvider
from companion.memory.memory_store import MemoryStore
from companion.memory.repositories import FaissMemoryRepository, InMemoryMemoryRepository
from companion.registry.companion_registry import CompanionRegistry
from companion.registry.models import Companion
from companion.registry.repositories import InMemoryCompanionRepository, JsonCompanionRepository


logger = logging.getLogger(__name__)


class CompanionEngine:

    def __init__(
        self,
        registry: CompanionRegistry,
        memory_store: MemoryStore,
        coordinator: GenerationSessionCoordinator,
        settings: EngineSettings | None = None,
        locks: SessionLockManager | None = None,
    ) -> None:
        self.registry = registry
        self.memory_store = memory_store
        self.coordinator = coordinator
        self.settings = settings or EngineSettings()
        self.locks = locks or coordinator.locks

    # ------------------------------------------------------------------
    # Companions
    # ------------------------------------------------------------------

    async def create_companion(
        self,
        owner_id: str,
        name: str,
        traits: Mapping[str, Any] | None = None,
        interests: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> Companion:
        return await self.registry.create(owner_id, name, traits, interests, now=now)

    async def get_companion(self, companion_id: str) -> Companion:
        return await self.registry.get(companion_id)

    async def get_companion_by_owner(self, owner_id: str) -> Companion:
        return await self.registry.get_by_owner(owner_id)

    async def deactivate_companion(self, companion_id: str) -> Companion:
        return await self.registry.deactivate(companion_id)

    async def remove_companion(self, companion_id: str) -> int:
        """Delete a companion and all of its memories.

        The companion's session lock is held for the whole cascade, so no turn
        can be admitted (and commit a memory) between the two deletes.

        Returns:
            Number of memories removed.
        """
        companion = await self.registry.get(companion_id)
        token = await self.locks.try_acquire(companion.id)
        if token is None:
            raise Busy(f"Companion {companion.id} has a turn in flight")

        try:
            removed = await self.memory_store.delete_all(companion.id)
            await self.registry.delete(companion.id)
        finally:
            await self.locks.release(companion.id, token)
        logger.info("Companion %s removed with %d memories", companion.id, removed)
        return removed

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def _request(
        self,
        companion_id: str,
        message: str,
        history: Iterable[ConversationTurn | Mapping[str, Any]] | None,
        context: Any,
    ) -> ChatRequest:
        return ChatRequest.build(companion_id, message, history or (), context)

    async def chat(
        self,
        companion_id: str,
        message: str,
        history: Iterable[ConversationTurn | Mapping[str, Any]] | None = None,
        context: Any = None,
        cancellation: CancellationToken | None = None,
    ) -> ChatResponse:
        request = self._request(companion_id, message, history, context)
        return await self.coordinator.chat(request, cancellation)

    async def stream_chat(
        self,
        companion_id: str,
        message: str,
        history: Iterable[ConversationTurn | Mapping[str, Any]] | None = None,
        context: Any = None,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        try:
            request = self._request(companion_id, message, history, context)
        except ValidationError as exc:
            yield StreamEvent.error(exc.code, exc.message)
            return

        events = self.coordinator.stream_chat(request, cancellation)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    def cancel(self, companion_id: str) -> bool:
        return self.coordinator.cancel(companion_id)

    def session_state(self, companion_id: str) -> SessionState:
        return self.coordinator.state_of(companion_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self, companion_id: str, now: datetime | None = None) -> dict[str, int]:
        companion = await self.registry.get(companion_id)
        decayed = await self.memory_store.decay(companion.id, now=now)
        purged = await self.memory_store.purge_expired(companion.id, now=now)
        return {"decayed": decayed, "purged": purged}

    async def close(self) -> None:
        await self.coordinator.drain()
        close = getattr(self.locks, "close", None)
        if close is not None:
            await close()


def _build_locks(settings: EngineSettings) -> SessionLockManager:
    storage = settings.storage
    if storage.lock_backend == "redis":
        return RedisSessionLocks(storage.redis_url, ttl_seconds=storage.lock_ttl_seconds)
    if storage.lock_backend == "local":
        return InProcessSessionLocks()
    raise ValueError(f"Unsupported LOCK_BACKEND: {storage.lock_backend}")


def build_engine(
    settings: EngineSettings | None = None,
    *,
    embedder: EmbeddingProvider | None = None,
    generation: GenerationProvider | None = None,
    locks: SessionLockManager | None = None,
    on_commit_failure: CommitFailureReporter | None = None,
) -> CompanionEngine:
    """Wire a `CompanionEngine` from settings, defaulting to environment config."""
    settings = settings or EngineSettings.from_env()

    if embedder is None:
        from companion.memory.embedding_model import SentenceTransformerEmbedder

        embedder = SentenceTransformerEmbedder(settings.provider.embed_model)

    if generation is None:
        from companion.llm.client import OpenAICompatibleProvider

        generation = OpenAICompatibleProvider(settings.provider)

    storage = settings.storage
    dimension = None

    if storage.backend == "file":
        # Loads the embedding model; FAISS needs the vector width up front.
        dimension = getattr(embedder, "dimension", None)
        if dimension is None:
            raise ValueError("File storage needs an embedder with a known dimension")
        companion_repo = JsonCompanionRepository(storage.data_dir)
        memory_repo = FaissMemoryRepository(storage.data_dir, dimension)
    elif storage.backend == "memory":
        companion_repo = InMemoryCompanionRepository()
        memory_repo = InMemoryMemoryRepository()
    else:
        raise ValueError(f"Unsupported STORAGE_BACKEND: {storage.backend}")

    memory_store = MemoryStore(memory_repo, settings.retrieval, dimension=dimension)
    registry = CompanionRegistry(companion_repo, generation, settings.generation)
    locks = locks or _build_locks(settings)

    coordinator = GenerationSessionCoordinator(
        registry=registry,
        memory_store=memory_store,
        embedder=embedder,
        generation=generation,
        locks=locks,
        settings=settings.generation,
        retrieval=settings.retrieval,
        on_commit_failure=on_commit_failure,
    )

    logger.info(
        "Engine ready (storage=%s, locks=%s, provider=%s)",
        storage.backend,
        storage.lock_backend,
        settings.provider.provider,
    )
    return CompanionEngine(registry, memory_store, coordinator, settings, locks)
