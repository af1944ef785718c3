"""Prompt assembly for companion turns and auxiliary provider calls.

This module only builds prompt structures from inputs it is given. Retrieval,
locking, model invocation and persistence happen elsewhere.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering of prompt sections.
    - No hidden side effects (no I/O, no global state mutation).

Turn prompt section order (system message):
    1) Persona: name, description, communication style, interests, raw traits.
    2) Retrieved memories, most relevant first, as "User said / You said" pairs.
    3) External context, rendered verbatim (omitted when absent).
    4) Fixed behavioural guidelines.
    The recent conversation window follows as chat messages, then the new user
    message.

Prompt safety model:
    - Safety is instruction-led, not parser-enforced.
    - Memories, context and user text are interpolated as raw strings.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from companion.core.models import ConversationTurn
from companion.memory.models import Memory
from companion.registry.models import Companion, PersonalityTraits, TRAIT_NAMES


NO_MEMORIES_LINE = "No relevant memories yet."

GUIDELINES = (
    "Guidelines:\n"
    "- Stay in character as described above at all times.\n"
    "- Reference the memories when they are relevant to the message.\n"
    "- Do not invent shared history that is not listed in the memories.\n"
    "- Keep responses concise and conversational.\n"
)


@dataclass(frozen=True)
class PromptSpec:
    """Provider-agnostic generation request."""

    system: str
    messages: tuple[dict[str, str], ...] = field(default_factory=tuple)
    max_tokens: int = 500
    temperature: float = 0.8

    def to_messages(self) -> list[dict[str, str]]:
        """Chat-completions message list (system first)."""
        return [{"role": "system", "content": self.system}, *[dict(m) for m in self.messages]]


# =========================================================
# TURN PROMPT
# =========================================================

def _persona_section(companion: Companion) -> str:
    traits = companion.traits.as_dict()
    trait_lines = "\n".join(f"- {name}: {traits[name]:.2f}" for name in TRAIT_NAMES)
    interests = ", ".join(companion.interests) if companion.interests else "none listed"

    return (
        f"You are {companion.name}, the user's personal companion.\n"
        f"Personality: {companion.description.strip()}\n"
        f"Communication style: {companion.communication_style}\n"
        f"Interests: {interests}\n"
        f"Relationship level: {companion.relationship_level:.1f} "
        f"({companion.interaction_count} previous conversations)\n"
        "Personality traits (0 = low, 1 = high):\n"
        f"{trait_lines}\n"
    )


def format_memory(memory: Memory) -> str:
    """Render one memory as a "User said / You said" pair when possible."""
    user_said = memory.metadata.get("user_message")
    companion_said = memory.metadata.get("companion_response")
    if user_said and companion_said:
        return f"- User said: {user_said.strip()}\n  You said: {companion_said.strip()}"
    return f"- {memory.content.strip()}"


def _memory_section(memories: Sequence[Memory]) -> str:
    lines = [format_memory(m) for m in memories]
    body = "\n".join(lines) if lines else NO_MEMORIES_LINE
    return "Things you remember from earlier conversations (most relevant first):\n" + body + "\n"


def render_context(context: Any) -> str:
    if isinstance(context, str):
        return context.strip()
    return json.dumps(context, indent=2, sort_keys=True, ensure_ascii=False, default=str)


def _context_section(context: Any) -> str:
    if context is None or context == {} or context == "":
        return ""
    return "Additional context:\n" + render_context(context) + "\n"


def _turn_messages(recent_turns: Iterable[ConversationTurn], user_message: str) -> tuple[dict[str, str], ...]:
    messages = [
        {"role": turn.chat_role, "content": turn.content}
        for turn in recent_turns
        if turn.content and turn.content.strip()
    ]
    messages.append({"role": "user", "content": user_message.strip()})
    return tuple(messages)


def assemble(
    companion: Companion,
    memories: Sequence[Memory],
    recent_turns: Sequence[ConversationTurn],
    user_message: str,
    external_context: Any = None,
    max_tokens: int = 500,
    temperature: float = 0.8,
) -> PromptSpec:
    """Build the generation request for one companion turn.

    Args:
        companion: Companion identity and personality.
        memories: Retrieved memories, already ranked most relevant first.
        recent_turns: Windowed conversation history, oldest first.
        user_message: The new user message.
        external_context: Arbitrary structured data rendered verbatim.

    Returns:
        `PromptSpec` whose system message contains the four sections in fixed
        order and whose messages carry the window plus the new message.
    """
    sections = [
        _persona_section(companion),
        _memory_section(memories),
        _context_section(external_context),
        GUIDELINES,
    ]
    system = "\n".join(s for s in sections if s)

    return PromptSpec(
        system=system,
        messages=_turn_messages(recent_turns, user_message),
        max_tokens=max_tokens,
        temperature=temperature,
    )


def format_memory_record(user_message: str, companion_response: str) -> str:
    """Content stored for one committed exchange."""
    return f"User: {user_message.strip()}\nCompanion: {companion_response.strip()}"


# =========================================================
# AUXILIARY PROMPTS
# =========================================================

def build_description_prompt(
    name: str,
    traits: PersonalityTraits,
    interests: Sequence[str],
    max_tokens: int = 200,
) -> PromptSpec:
    trait_text = ", ".join(f"{k}={v:.2f}" for k, v in traits.as_dict().items())
    interest_text = ", ".join(interests) if interests else "none"
    return PromptSpec(
        system=(
            "You write short personality descriptions for AI companions.\n"
            "Write two or three sentences in the second person (\"You are ...\").\n"
            "Do not mention numeric trait values.\n"
        ),
        messages=(
            {
                "role": "user",
                "content": (
                    f"Name: {name}\n"
                    f"Traits: {trait_text}\n"
                    f"Communication style: {traits.communication_style}\n"
                    f"Interests: {interest_text}\n\n"
                    "Description:"
                ),
            },
        ),
        max_tokens=max_tokens,
        temperature=0.7,
    )


def build_sentiment_prompt(text: str) -> PromptSpec:
    return PromptSpec(
        system=(
            "You are a sentiment analysis component.\n"
            "Reply with a single JSON object and nothing else, shaped as:\n"
            '{"sentiment": "positive" | "neutral" | "negative", '
            '"intensity": <number between 0 and 1>, '
            '"emotions": [<up to three lowercase emotion words>]}\n'
        ),
        messages=({"role": "user", "content": text.strip()},),
        max_tokens=100,
        temperature=0.0,
    )


def build_suggestion_prompt(
    companion: Companion,
    user_message: str,
    companion_response: str,
    count: int = 3,
) -> PromptSpec:
    return PromptSpec(
        system=(
            f"You suggest follow-up messages a user might send to {companion.name}.\n"
            f"Return exactly {count} short suggestions, one per line, without numbering.\n"
        ),
        messages=(
            {
                "role": "user",
                "content": (
                    f"User: {user_message.strip()}\n"
                    f"{companion.name}: {companion_response.strip()}\n\n"
                    "Suggestions:"
                ),
            },
        ),
        max_tokens=120,
        temperature=0.9,
    )
