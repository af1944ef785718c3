"""Generation session coordinator: per-companion turn state machine.

Architectural role:
    Drives one chat turn from admission to commit. It is the only component that
    talks to every other one: registry (identity, stats), memory store (recall,
    commit), embedding and generation providers, and the session lock manager.

State machine (per companion):
    Idle -> Generating -> (Completing | Cancelled | Failed) -> Idle

    - Admission: validate, load companion, take the lock without waiting. A held
      lock is rejected with `Busy`; requests are never queued.
    - Generating: embed the message, recall memories (storage failure degrades to
      no memories), assemble the prompt, call the provider single-shot or
      streamed. Streams are buffered locally while chunks are forwarded.
    - Cancelled / Failed: the in-flight provider call is cancelled (best effort)
      and abandoned to the background, the lock is released, nothing is written.
    - Completing: sentiment of the user message (neutral on failure), memory
      write of the exchange (failure reported, not raised), `record_turn`,
      release. The commit runs shielded so a caller going away mid-commit cannot
      leave a half-committed turn.
    - Suggestions are requested after the lock is released, with their own
      deadline, and never fail the turn.

Deadlines:
    Every provider call is raced against its deadline and the session's
    cancellation token. A missed deadline is a `ProviderTimeout`.

Limitations:
    Cancellation by companion id (`cancel`) only reaches sessions running in this
    process, even when the lock manager is shared across processes.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from companion.config import GenerationSettings, RetrievalSettings
from companion.core.models import ChatRequest, ChatResponse, StreamEvent, conversation_window
from companion.core.session import (
    CancellationToken,
    GenerationSession,
    InProcessSessionLocks,
    SessionLockManager,
    SessionState,
)
from companion.errors import (
    Busy,
    CompanionError,
    EmbeddingFailure,
    GenerationFailure,
    NotFound,
    ProviderError,
    ProviderTimeout,
    StorageFailure,
    TurnCancelled,
    ValidationError,
)
from companion.llm.service import (
    NEUTRAL_SENTIMENT,
    GenerationProvider,
    Sentiment,
    generate_suggestions,
)
from companion.memory.embedding_model import EmbeddingProvider
from companion.memory.memory_store import MemoryStore
from companion.memory.models import Memory
from companion.prompting.prompt_builder import PromptSpec, assemble, format_memory_record
from companion.registry.companion_registry import CompanionRegistry
from companion.registry.models import Companion


logger = logging.getLogger(__name__)

CommitFailureReporter = Callable[[str, str, Exception], None]

MEMORY_CATEGORY = "conversation"


def log_commit_failure(companion_id: str, turn_id: str, error: Exception) -> None:
    logger.error(
        "COMMIT FAILURE companion=%s turn=%s error=%s",
        companion_id,
        turn_id,
        type(error).__name__,
    )


async def _next_chunk(iterator):
    return await iterator.__anext__()


class GenerationSessionCoordinator:

    def __init__(
        self,
        registry: CompanionRegistry,
        memory_store: MemoryStore,
        embedder: EmbeddingProvider,
        generation: GenerationProvider,
        locks: SessionLockManager | None = None,
        settings: GenerationSettings | None = None,
        retrieval: RetrievalSettings | None = None,
        on_commit_failure: CommitFailureReporter | None = None,
    ) -> None:
        self.registry = registry
        self.memory_store = memory_store
        self.embedder = embedder
        self.generation = generation
        self.locks = locks or InProcessSessionLocks()
        self.settings = settings or GenerationSettings()
        self.retrieval = retrieval or memory_store.settings
        self.on_commit_failure = on_commit_failure or log_commit_failure

        self._sessions: dict[str, GenerationSession] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection / control
    # ------------------------------------------------------------------

    def state_of(self, companion_id: str) -> SessionState:
        session = self._sessions.get(companion_id)
        return session.state if session else SessionState.IDLE

    def cancel(self, companion_id: str, reason: str = "cancelled by caller") -> bool:
        """Cancel the companion's in-flight generation, if any, in this process."""
        session = self._sessions.get(companion_id)
        if session is None or session.state != SessionState.GENERATING:
            return False
        session.cancellation.cancel(reason)
        return True

    async def drain(self) -> None:
        """Wait for background commits and abandoned provider calls."""
        while self._background:
            await asyncio.wait(list(self._background))

    # ------------------------------------------------------------------
    # Background task bookkeeping
    # ------------------------------------------------------------------

    def _spawn(self, awaitable: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, StopAsyncIteration):
            logger.debug("Discarded background provider result: %s", type(exc).__name__)

    def _abandon(self, task: asyncio.Task) -> None:
        """Best-effort abort; a provider that ignores it finishes unobserved."""
        task.cancel()
        self._background.add(task)
        task.add_done_callback(self._reap)

    def _discard_stream(self, iterator, pending: asyncio.Task | None) -> None:
        async def _close():
            if pending is not None and not pending.done():
                await asyncio.wait([pending])
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        self._spawn(_close())

    # ------------------------------------------------------------------
    # Admission and release
    # ------------------------------------------------------------------

    def _validate(self, request: ChatRequest) -> None:
        if not request.companion_id or not str(request.companion_id).strip():
            raise ValidationError("companion_id is required")
        if not isinstance(request.message, str) or not request.message.strip():
            raise ValidationError("message must be a non-empty string")
        if len(request.message) > self.settings.max_message_chars:
            raise ValidationError(
                f"message exceeds {self.settings.max_message_chars} characters"
            )

    async def _admit(
        self,
        request: ChatRequest,
        cancellation: CancellationToken | None,
    ) -> tuple[Companion, GenerationSession]:
        self._validate(request)

        companion = await self.registry.get(request.companion_id)
        if not companion.active:
            raise NotFound(f"Companion {companion.id} is inactive")

        token = await self.locks.try_acquire(companion.id)
        if token is None:
            logger.info("Rejected turn for companion %s: session in flight", companion.id)
            raise Busy(f"Companion {companion.id} is already generating a response")

        # Re-read under the lock: a removal or deactivation may have landed in between.
        try:
            companion = await self.registry.get(companion.id)
            if not companion.active:
                raise NotFound(f"Companion {companion.id} is inactive")
        except BaseException:
            await self.locks.release(companion.id, token)
            raise

        session = GenerationSession(
            companion_id=companion.id,
            lock_token=token,
            cancellation=cancellation or CancellationToken(),
        )
        self._sessions[companion.id] = session
        logger.info("Turn %s started for companion %s", session.turn_id, companion.id)
        return companion, session

    async def _release(self, session: GenerationSession) -> None:
        if self._sessions.get(session.companion_id) is session:
            del self._sessions[session.companion_id]
        try:
            await self.locks.release(session.companion_id, session.lock_token)
        except Exception:
            # Redis locks expire on their own; log and let the TTL reclaim it.
            logger.exception("Failed to release session lock for companion %s", session.companion_id)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _await_provider(
        self,
        session: GenerationSession,
        awaitable: Awaitable,
        timeout: float,
        label: str,
        failure: type[ProviderError] = GenerationFailure,
    ):
        """Race a provider call against its deadline and the cancellation token."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(session.cancellation.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=max(0.0, timeout),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                self._abandon(task)

        if session.cancellation.cancelled:
            if task.done() and not task.cancelled():
                task.exception()
            raise TurnCancelled(session.cancellation.reason or "cancelled")

        if task not in done:
            raise ProviderTimeout(f"{label} timed out after {timeout:.1f}s")

        if task.cancelled():
            raise failure(f"{label} was cancelled upstream")

        try:
            return task.result()
        except (CompanionError, StopAsyncIteration):
            raise
        except Exception as exc:
            logger.exception("%s failed", label)
            raise failure(f"{label} failed") from exc

    async def _prepare(
        self,
        session: GenerationSession,
        companion: Companion,
        request: ChatRequest,
    ) -> tuple[list[Memory], PromptSpec]:
        query = await self._await_provider(
            session,
            self.embedder.embed(request.message, is_query=True),
            self.settings.embed_timeout,
            "Message embedding",
            EmbeddingFailure,
        )

        try:
            memories = await self.memory_store.retrieve(companion.id, query, k=self.retrieval.default_k)
        except (StorageFailure, ValidationError) as exc:
            logger.warning(
                "Memory retrieval failed for companion %s, continuing without memories: %s",
                companion.id,
                exc,
            )
            memories = []

        if session.cancellation.cancelled:
            raise TurnCancelled(session.cancellation.reason or "cancelled")

        prompt = assemble(
            companion,
            memories,
            conversation_window(request.history, self.settings.window_size),
            request.message,
            external_context=request.context,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        return memories, prompt

    # ------------------------------------------------------------------
    # Completing
    # ------------------------------------------------------------------

    async def _sentiment(self, text: str) -> Sentiment:
        try:
            return await asyncio.wait_for(
                self.generation.analyze_sentiment(text),
                timeout=self.settings.sentiment_timeout,
            )
        except Exception as exc:
            logger.warning("Sentiment analysis failed, using neutral: %s", type(exc).__name__)
            return NEUTRAL_SENTIMENT

    def _report_commit_failure(self, session: GenerationSession, exc: Exception) -> None:
        try:
            self.on_commit_failure(session.companion_id, session.turn_id, exc)
        except Exception:
            logger.exception("Commit failure reporter raised")

    async def _commit(
        self,
        session: GenerationSession,
        request: ChatRequest,
        text: str,
    ) -> Sentiment:
        """Completing -> Idle. Always releases the session lock."""
        try:
            sentiment = await self._sentiment(request.message)

            record = format_memory_record(request.message, text)
            try:
                embedding = await asyncio.wait_for(
                    self.embedder.embed(record),
                    timeout=self.settings.embed_timeout,
                )
                await self.memory_store.write(
                    session.companion_id,
                    record,
                    embedding,
                    metadata={
                        "turn_id": session.turn_id,
                        "user_message": request.message.strip(),
                        "companion_response": text,
                        "sentiment": sentiment.to_dict(),
                    },
                    category=MEMORY_CATEGORY,
                )
            except Exception as exc:
                logger.exception(
                    "Memory commit failed for companion %s turn %s",
                    session.companion_id,
                    session.turn_id,
                )
                self._report_commit_failure(session, exc)

            try:
                await self.registry.record_turn(session.companion_id, session.turn_id)
            except Exception as exc:
                logger.exception(
                    "Recording turn %s failed for companion %s",
                    session.turn_id,
                    session.companion_id,
                )
                self._report_commit_failure(session, exc)

            session.transition(SessionState.IDLE)
            logger.info("Turn %s completed for companion %s", session.turn_id, session.companion_id)
            return sentiment
        finally:
            await self._release(session)

    async def _finish(self, session: GenerationSession, request: ChatRequest, text: str) -> Sentiment:
        session.transition(SessionState.COMPLETING)
        commit = self._spawn(self._commit(session, request, text))
        return await asyncio.shield(commit)

    async def _suggestions(self, companion: Companion, message: str, text: str) -> list[str]:
        try:
            return await asyncio.wait_for(
                generate_suggestions(
                    self.generation,
                    companion,
                    message,
                    text,
                    self.settings.suggestion_count,
                ),
                timeout=self.settings.suggestion_timeout,
            )
        except Exception as exc:
            logger.warning("Suggestion generation skipped: %s", type(exc).__name__)
            return []

    def _mark_aborted(self, session: GenerationSession, exc: BaseException) -> None:
        if isinstance(exc, ProviderError):
            session.transition(SessionState.FAILED)
            logger.warning(
                "Turn %s failed for companion %s: %s",
                session.turn_id,
                session.companion_id,
                exc,
            )
        else:
            session.transition(SessionState.CANCELLED)
            logger.info("Turn %s cancelled for companion %s", session.turn_id, session.companion_id)

    # ------------------------------------------------------------------
    # Public turn entrypoints
    # ------------------------------------------------------------------

    async def chat(
        self,
        request: ChatRequest,
        cancellation: CancellationToken | None = None,
    ) -> ChatResponse:
        """Single-shot turn.

        Raises:
            ValidationError, NotFound, Busy: before anything is generated.
            GenerationFailure, ProviderTimeout, TurnCancelled: turn aborted,
                nothing committed.
        """
        started = time.perf_counter()
        companion, session = await self._admit(request, cancellation)
        handed_off = False

        try:
            try:
                memories, prompt = await self._prepare(session, companion, request)
                result = await self._await_provider(
                    session,
                    self.generation.generate(prompt, prompt.max_tokens, prompt.temperature),
                    self.settings.generation_timeout,
                    "Generation",
                )
                text = (result.text or "").strip()
                if not text:
                    raise GenerationFailure("Provider returned an empty response")
            except (ProviderError, TurnCancelled, asyncio.CancelledError) as exc:
                self._mark_aborted(session, exc)
                raise

            handed_off = True
            sentiment = await self._finish(session, request, text)
        finally:
            if not handed_off:
                await self._release(session)

        suggestions = await self._suggestions(companion, request.message, text)

        return ChatResponse(
            text=text,
            emotion=sentiment.to_dict(),
            suggestions=suggestions,
            tokens_used=result.tokens_used,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            turn_id=session.turn_id,
            memories_used=len(memories),
        )

    async def stream_chat(
        self,
        request: ChatRequest,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streamed turn: `chunk` events, then one `complete` or `error` event.

        Closing the iterator early (client disconnect) cancels the turn exactly
        like an explicit cancellation: nothing is committed.
        """
        started = time.perf_counter()
        try:
            companion, session = await self._admit(request, cancellation)
        except CompanionError as exc:
            yield StreamEvent.error(exc.code, exc.message)
            return

        loop = asyncio.get_running_loop()
        iterator = None
        pending: asyncio.Task | None = None
        handed_off = False
        failure: StreamEvent | None = None
        buffer: list[str] = []
        tokens_used = 0

        try:
            try:
                memories, prompt = await self._prepare(session, companion, request)
                iterator = self.generation.stream_generate(prompt, prompt.temperature).__aiter__()
                deadline = loop.time() + self.settings.stream_timeout

                while True:
                    pending = asyncio.ensure_future(_next_chunk(iterator))
                    try:
                        chunk = await self._await_provider(
                            session,
                            pending,
                            deadline - loop.time(),
                            "Generation stream",
                        )
                    except StopAsyncIteration:
                        raise GenerationFailure("Generation stream ended without a finished signal")
                    pending = None

                    if chunk.content:
                        buffer.append(chunk.content)
                        yield StreamEvent.chunk(chunk.content)
                        if session.cancellation.cancelled:
                            raise TurnCancelled(session.cancellation.reason or "cancelled")

                    if chunk.finished:
                        tokens_used = chunk.tokens_used
                        break

                text = "".join(buffer).strip()
                if not text:
                    raise GenerationFailure("Provider returned an empty response")

            except (ProviderError, TurnCancelled) as exc:
                self._mark_aborted(session, exc)
                failure = StreamEvent.error(exc.code, exc.message)
            except (GeneratorExit, asyncio.CancelledError) as exc:
                self._mark_aborted(session, exc)
                raise
            else:
                handed_off = True
                sentiment = await self._finish(session, request, text)
        finally:
            if iterator is not None:
                self._discard_stream(iterator, pending)
            if not handed_off:
                await self._release(session)

        # Terminal events go out only after the lock is released.
        if failure is not None:
            yield failure
            return

        suggestions = await self._suggestions(companion, request.message, text)

        yield StreamEvent.complete(
            text=text,
            emotion=sentiment.to_dict(),
            suggestions=suggestions,
            metadata={
                "tokensUsed": tokens_used,
                "processingTimeMs": int((time.perf_counter() - started) * 1000),
                "turnId": session.turn_id,
                "memoriesUsed": len(memories),
            },
        )
