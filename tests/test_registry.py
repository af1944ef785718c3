"""
Companion registry: trait validation, style derivation, creation and turn stats.
"""

import asyncio
import time

import pytest

from companion.config import GenerationSettings
from companion.errors import GenerationFailure, NotFound, ProviderTimeout, StorageFailure, ValidationError
from companion.registry.companion_registry import CompanionRegistry
from companion.registry.models import DEFAULT_STYLE, PersonalityTraits
from companion.registry.repositories import InMemoryCompanionRepository, JsonCompanionRepository


def make_registry(provider, repository=None, **settings):
    return CompanionRegistry(
        repository or InMemoryCompanionRepository(),
        provider,
        GenerationSettings(**settings),
    )


def test_style_combines_every_matching_label():
    traits = PersonalityTraits.from_mapping({"extraversion": 0.9, "agreeableness": 0.8})

    assert "enthusiastic" in traits.communication_style
    assert "warm and supportive" in traits.communication_style
    assert traits.openness == 0.5


def test_style_defaults_when_no_rule_triggers():
    assert PersonalityTraits().communication_style == DEFAULT_STYLE


def test_low_extraversion_reads_as_calm():
    assert PersonalityTraits(extraversion=0.1).communication_style == "calm and reflective"


@pytest.mark.parametrize(
    "traits",
    [
        {"extraversion": 1.2},
        {"agreeableness": -0.01},
        {"openness": "high"},
        {"openness": True},
        {"charisma": 0.5},
    ],
)
def test_invalid_traits_are_rejected(traits):
    with pytest.raises(ValidationError):
        PersonalityTraits.from_mapping(traits)


@pytest.mark.asyncio
async def test_create_makes_exactly_one_description_call(provider):
    registry = make_registry(provider)

    companion = await registry.create("owner-1", "Nova", {"extraversion": 0.9, "agreeableness": 0.8}, ["Music", "music", " chess "])

    assert len(provider.description_calls) == 1
    assert companion.description == provider.description
    assert companion.interests == ("Music", "chess")
    assert companion.interaction_count == 0
    assert companion.relationship_level == 0.0
    assert (await registry.get(companion.id)) == companion
    assert (await registry.get_by_owner("owner-1")).id == companion.id


@pytest.mark.asyncio
async def test_description_failure_fails_creation(provider):
    provider.fail_description = True
    registry = make_registry(provider)

    with pytest.raises(GenerationFailure):
        await registry.create("owner-1", "Nova", {})

    with pytest.raises(NotFound):
        await registry.get_by_owner("owner-1")


@pytest.mark.asyncio
async def test_description_timeout_is_reported_as_timeout(provider):
    provider.description_delay = 1.0
    registry = make_registry(provider, description_timeout=0.05)

    with pytest.raises(ProviderTimeout) as info:
        await registry.create("owner-1", "Nova", {})

    assert info.value.code == "Timeout"


@pytest.mark.asyncio
async def test_invalid_input_never_reaches_the_provider(provider):
    registry = make_registry(provider)

    with pytest.raises(ValidationError):
        await registry.create("owner-1", "", {})
    with pytest.raises(ValidationError):
        await registry.create("owner-1", "Nova", {"neuroticism": 3})

    assert provider.prompts == []


@pytest.mark.asyncio
async def test_one_companion_per_owner(provider):
    registry = make_registry(provider)
    await registry.create("owner-1", "Nova", {})

    with pytest.raises(ValidationError):
        await registry.create("owner-1", "Echo", {})


@pytest.mark.asyncio
async def test_record_turn_updates_stats_once_per_turn(provider, frozen_now):
    registry = make_registry(provider)
    companion = await registry.create("owner-1", "Nova", {"agreeableness": 1.0})

    updated = await registry.record_turn(companion.id, "turn-1", at=frozen_now)
    again = await registry.record_turn(companion.id, "turn-1", at=frozen_now)

    assert updated.interaction_count == 1
    assert updated.relationship_level == pytest.approx(1.5)
    assert updated.last_interaction_at == frozen_now
    assert again.interaction_count == 1


@pytest.mark.asyncio
async def test_deactivate_keeps_record(provider):
    registry = make_registry(provider)
    companion = await registry.create("owner-1", "Nova", {})

    deactivated = await registry.deactivate(companion.id)

    assert deactivated.active is False
    assert (await registry.get(companion.id)).active is False


@pytest.mark.asyncio
async def test_unknown_companion_is_not_found(provider):
    registry = make_registry(provider)
    with pytest.raises(NotFound):
        await registry.get("missing")


@pytest.mark.asyncio
async def test_json_repository_reloads_companions(tmp_path, provider, frozen_now):
    registry = make_registry(provider, JsonCompanionRepository(str(tmp_path)))
    companion = await registry.create("owner-1", "Nova", {"openness": 0.8}, ["hiking"], now=frozen_now)
    await registry.record_turn(companion.id, "turn-1", at=frozen_now)

    reloaded = JsonCompanionRepository(str(tmp_path)).get(companion.id)

    assert reloaded.name == "Nova"
    assert reloaded.traits.openness == 0.8
    assert reloaded.interests == ("hiking",)
    assert reloaded.interaction_count == 1
    assert reloaded.last_turn_id == "turn-1"
    assert reloaded.created_at == frozen_now


class SlowTurnRepository(InMemoryCompanionRepository):
    """Stalls saves that record a turn, leaving a window for other updates."""

    def save(self, companion):
        if companion.interaction_count:
            time.sleep(0.2)
        super().save(companion)


@pytest.mark.asyncio
async def test_deactivate_during_record_turn_is_not_lost(provider, frozen_now):
    registry = make_registry(provider, SlowTurnRepository())
    companion = await registry.create("owner-1", "Nova", {})

    turn = asyncio.ensure_future(registry.record_turn(companion.id, "turn-1", at=frozen_now))
    await asyncio.sleep(0.05)
    await registry.deactivate(companion.id)
    await turn

    stored = await registry.get(companion.id)
    assert stored.active is False
    assert stored.interaction_count == 1


@pytest.mark.asyncio
async def test_json_repository_delete_rolls_back_on_write_failure(tmp_path, provider, monkeypatch):
    repository = JsonCompanionRepository(str(tmp_path))
    registry = make_registry(provider, repository)
    companion = await registry.create("owner-1", "Nova", {})

    def failing_save(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("companion.registry.repositories.atomic_json_save", failing_save)

    with pytest.raises(StorageFailure):
        await registry.delete(companion.id)
    assert repository.get(companion.id) == companion
    assert repository.get_by_owner("owner-1") == companion
