"""
Prompt assembly: section order, memory rendering, context and window handling.
"""

from datetime import datetime, timezone

from companion.core.models import ConversationTurn
from companion.memory.models import Memory
from companion.prompting.prompt_builder import (
    GUIDELINES,
    NO_MEMORIES_LINE,
    assemble,
    build_description_prompt,
    format_memory_record,
)
from companion.registry.models import Companion, PersonalityTraits


CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_companion():
    return Companion(
        id="c1",
        owner_id="owner-1",
        name="Nova",
        traits=PersonalityTraits(extraversion=0.9, agreeableness=0.8),
        description="You are bright and kind.",
        created_at=CREATED,
        interests=("astronomy", "jazz"),
    )


def exchange_memory(memory_id, user, reply):
    return Memory(
        id=memory_id,
        companion_id="c1",
        content=format_memory_record(user, reply),
        embedding=(1.0,),
        created_at=CREATED,
        metadata={"user_message": user, "companion_response": reply},
    )


def test_sections_appear_in_fixed_order():
    memory = exchange_memory("m1", "My cat is called Pixel", "Pixel is a lovely name!")

    prompt = assemble(make_companion(), [memory], [], "hi", external_context={"mood": "tired"})
    system = prompt.system

    persona = system.index("You are Nova")
    memories = system.index("User said: My cat is called Pixel")
    context = system.index("Additional context:")
    guidelines = system.index(GUIDELINES)
    assert persona < memories < context < guidelines


def test_persona_lists_style_interests_and_traits():
    system = assemble(make_companion(), [], [], "hi").system

    assert "You are bright and kind." in system
    assert "enthusiastic, warm and supportive" in system
    assert "astronomy, jazz" in system
    assert "- extraversion: 0.90" in system
    assert "- neuroticism: 0.50" in system


def test_placeholder_when_no_memories():
    system = assemble(make_companion(), [], [], "hi").system

    assert NO_MEMORIES_LINE in system
    assert "Additional context:" not in system


def test_memories_keep_retrieval_order_and_fallback_to_content():
    ranked = [
        exchange_memory("m1", "I love tea", "Tea is wonderful."),
        Memory(id="m2", companion_id="c1", content="User's birthday is in May", embedding=(1.0,), created_at=CREATED),
    ]

    system = assemble(make_companion(), ranked, [], "hi").system

    assert "- User said: I love tea\n  You said: Tea is wonderful." in system
    assert system.index("I love tea") < system.index("- User's birthday is in May")


def test_context_is_rendered_verbatim_and_stably():
    context = {"weather": "rain", "city": "Lisbon"}

    first = assemble(make_companion(), [], [], "hi", external_context=context).system
    second = assemble(make_companion(), [], [], "hi", external_context=dict(reversed(list(context.items())))).system

    assert first == second
    assert '"city": "Lisbon"' in first
    assert "Additional context:\nIt is raining" in assemble(
        make_companion(), [], [], "hi", external_context="It is raining"
    ).system


def test_window_turns_precede_the_new_message():
    turns = [
        ConversationTurn("user", "Hello"),
        ConversationTurn("assistant", "Hi there!"),
        ConversationTurn("user", "   "),
    ]

    prompt = assemble(make_companion(), [], turns, "  What's your favorite color?  ", max_tokens=120, temperature=0.3)

    assert list(prompt.messages) == [
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Hi there!"},
        {"role": "user", "content": "What's your favorite color?"},
    ]
    assert prompt.to_messages()[0]["role"] == "system"
    assert prompt.max_tokens == 120
    assert prompt.temperature == 0.3


def test_description_prompt_carries_style_not_numbers_only():
    prompt = build_description_prompt("Nova", PersonalityTraits(openness=0.9), ["poetry"])

    assert "curious and imaginative" in prompt.messages[0]["content"]
    assert "Interests: poetry" in prompt.messages[0]["content"]
