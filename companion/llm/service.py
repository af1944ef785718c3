"""Generation provider contract and provider-backed helper calls.

Architectural role:
    Defines the result types and the `GenerationProvider` protocol consumed by
    the registry and the coordinator, plus the auxiliary calls built on top of a
    provider (companion description, sentiment, follow-up suggestions).

Model call flow:
    prompt builder -> `PromptSpec` -> provider (`generate` / `stream_generate`)
    -> parsed result.

Failure model:
    Providers raise `GenerationFailure`. Parsing helpers never raise on
    malformed model output: sentiment falls back to neutral, suggestions to an
    empty list. Deadlines are applied by callers.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

from companion.errors import GenerationFailure
from companion.prompting.prompt_builder import (
    PromptSpec,
    build_description_prompt,
    build_sentiment_prompt,
    build_suggestion_prompt,
)
from companion.registry.models import Companion, PersonalityTraits


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_used: int = 0


@dataclass(frozen=True)
class StreamChunk:
    content: str
    finished: bool = False
    tokens_used: int = 0


@dataclass(frozen=True)
class Sentiment:
    sentiment: str = "neutral"
    intensity: float = 0.0
    emotions: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "sentiment": self.sentiment,
            "intensity": self.intensity,
            "emotions": list(self.emotions),
        }


NEUTRAL_SENTIMENT = Sentiment()

_SENTIMENT_LABELS = {"positive", "neutral", "negative"}


class GenerationProvider(Protocol):

    async def generate(self, prompt: PromptSpec, max_tokens: int, temperature: float) -> GenerationResult:
        ...

    def stream_generate(self, prompt: PromptSpec, temperature: float) -> AsyncIterator[StreamChunk]:
        """Finite, non-restartable chunk stream ending with `finished=True`."""
        ...

    async def analyze_sentiment(self, text: str) -> Sentiment:
        ...


def clean_json_response(response: str) -> str:
    """Strip code fences models like to wrap JSON in."""
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_sentiment(raw: str) -> Sentiment:
    """Parse a model's JSON sentiment answer, neutral on anything malformed."""
    try:
        data = json.loads(clean_json_response(raw or ""))
    except (TypeError, ValueError):
        logger.warning("Unparseable sentiment response; using neutral")
        return NEUTRAL_SENTIMENT

    if not isinstance(data, dict):
        return NEUTRAL_SENTIMENT

    label = str(data.get("sentiment", "neutral")).strip().lower()
    if label not in _SENTIMENT_LABELS:
        label = "neutral"

    try:
        intensity = min(1.0, max(0.0, float(data.get("intensity", 0.0))))
    except (TypeError, ValueError):
        intensity = 0.0

    emotions = data.get("emotions") or []
    if not isinstance(emotions, list):
        emotions = []
    emotions = tuple(str(e).strip().lower() for e in emotions if str(e).strip())[:3]

    return Sentiment(sentiment=label, intensity=intensity, emotions=emotions)


def parse_suggestions(raw: str, count: int) -> list[str]:
    suggestions = []
    for line in (raw or "").splitlines():
        line = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip().strip('"')
        if line and line not in suggestions:
            suggestions.append(line)
    return suggestions[:count]


async def generate_description(
    provider: GenerationProvider,
    name: str,
    traits: PersonalityTraits,
    interests: tuple[str, ...],
) -> str:
    """One provider call producing the persisted personality description."""
    prompt = build_description_prompt(name, traits, interests)
    result = await provider.generate(prompt, prompt.max_tokens, prompt.temperature)
    description = (result.text or "").strip()
    if not description:
        raise GenerationFailure("Provider returned an empty companion description")
    return description


async def sentiment_via_generation(provider: GenerationProvider, text: str) -> Sentiment:
    """`analyze_sentiment` for providers that only offer text generation."""
    prompt = build_sentiment_prompt(text)
    result = await provider.generate(prompt, prompt.max_tokens, prompt.temperature)
    return parse_sentiment(result.text)


async def generate_suggestions(
    provider: GenerationProvider,
    companion: Companion,
    user_message: str,
    companion_response: str,
    count: int,
) -> list[str]:
    if count <= 0:
        return []
    prompt = build_suggestion_prompt(companion, user_message, companion_response, count)
    result = await provider.generate(prompt, prompt.max_tokens, prompt.temperature)
    return parse_suggestions(result.text, count)
