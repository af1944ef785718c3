"""
Shared fakes and fixtures for the companion engine tests.
"""

import asyncio
import hashlib
import math
import re
from datetime import datetime, timezone

import pytest

from companion.config import EngineSettings, GenerationSettings, RetrievalSettings
from companion.core.engine import build_engine
from companion.llm.service import GenerationResult, StreamChunk, sentiment_via_generation


FROZEN_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

DESCRIPTION_MARKER = "personality descriptions"
SENTIMENT_MARKER = "sentiment analysis"
SUGGESTION_MARKER = "suggest follow-up"
TURN_MARKER = "personal companion"


class HashingEmbedder:
    """Deterministic bag-of-words embedder (md5 buckets, L2-normalized)."""

    dimension = 64

    def __init__(self):
        self.calls = []

    async def embed(self, text, is_query=False):
        self.calls.append((text, is_query))
        vec = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]


class ScriptedProvider:
    """Generation provider with canned answers and injectable faults.

    Prompts are told apart by their system message, so one instance serves
    description, sentiment, suggestion and turn calls.
    """

    def __init__(
        self,
        reply="Blue, like a calm sea at dawn.",
        chunks=("Blue, ", "like a calm ", "sea at dawn."),
        description="You are an upbeat, caring friend who loves a good chat.",
        sentiment='{"sentiment": "positive", "intensity": 0.6, "emotions": ["curiosity"]}',
        suggestions="Why blue?\nWhat is your favorite season?\nTell me about the sea",
    ):
        self.reply = reply
        self.chunks = list(chunks)
        self.description = description
        self.sentiment = sentiment
        self.suggestions = suggestions

        self.fail_description = False
        self.description_delay = 0.0
        self.fail_generate = False
        self.generate_delay = 0.0
        self.ignore_cancellation = False
        self.fail_after_chunks = None
        self.stream_finishes = True
        self.chunk_delay = 0.0
        self.fail_sentiment = False

        self.prompts = []
        self.closed_streams = 0

    @property
    def turn_prompts(self):
        return [p for p in self.prompts if TURN_MARKER in p.system]

    @property
    def description_calls(self):
        return [p for p in self.prompts if DESCRIPTION_MARKER in p.system]

    async def _sleep(self, seconds):
        try:
            await asyncio.sleep(seconds)
        except asyncio.CancelledError:
            if not self.ignore_cancellation:
                raise
            await asyncio.sleep(seconds)

    async def generate(self, prompt, max_tokens, temperature):
        self.prompts.append(prompt)
        system = prompt.system

        if DESCRIPTION_MARKER in system:
            if self.description_delay:
                await asyncio.sleep(self.description_delay)
            if self.fail_description:
                raise RuntimeError("description backend down")
            return GenerationResult(self.description, 30)

        if SENTIMENT_MARKER in system:
            if self.fail_sentiment:
                raise RuntimeError("sentiment backend down")
            return GenerationResult(self.sentiment, 10)

        if SUGGESTION_MARKER in system:
            return GenerationResult(self.suggestions, 12)

        if self.generate_delay:
            await self._sleep(self.generate_delay)
        if self.fail_generate:
            raise RuntimeError("generation backend down")
        return GenerationResult(self.reply, 42)

    async def stream_generate(self, prompt, temperature):
        self.prompts.append(prompt)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after_chunks is not None and i >= self.fail_after_chunks:
                    raise RuntimeError("injected provider fault")
                if self.chunk_delay:
                    await self._sleep(self.chunk_delay)
                yield StreamChunk(content=chunk)
            if self.stream_finishes:
                yield StreamChunk(content="", finished=True, tokens_used=len(self.chunks))
        finally:
            self.closed_streams += 1

    async def analyze_sentiment(self, text):
        if self.fail_sentiment:
            raise RuntimeError("sentiment backend down")
        return await sentiment_via_generation(self, text)


@pytest.fixture
def frozen_now():
    return FROZEN_NOW


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def settings():
    return EngineSettings(
        retrieval=RetrievalSettings(),
        generation=GenerationSettings(
            embed_timeout=2.0,
            generation_timeout=2.0,
            stream_timeout=2.0,
            sentiment_timeout=1.0,
            suggestion_timeout=1.0,
            description_timeout=2.0,
        ),
    )


@pytest.fixture
def commit_failures():
    return []


@pytest.fixture
def engine(settings, embedder, provider, commit_failures):
    return build_engine(
        settings,
        embedder=embedder,
        generation=provider,
        on_commit_failure=lambda cid, turn_id, exc: commit_failures.append((cid, turn_id, exc)),
    )
