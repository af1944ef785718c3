"""Companion identity and lifecycle.

Lifecycle:
    - `create`: validate input, make exactly one description call, persist.
      A failed or timed-out description call fails creation; nothing is stored
      and nothing is retried here.
    - `record_turn`: called by the coordinator once per completed turn. A turn id
      that was already recorded is ignored, so a retried commit cannot count a
      turn twice.
    - `deactivate`: soft switch; memories are untouched.

Updates to one companion (`record_turn`, `deactivate`, `delete`) are serialized
per companion id, so a deactivation that lands while a turn is being recorded
is never overwritten by that turn's stale snapshot.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from companion.config import GenerationSettings
from companion.errors import (
    GenerationFailure,
    NotFound,
    ProviderError,
    ProviderTimeout,
    ValidationError,
)
from companion.llm.service import GenerationProvider, generate_description
from companion.registry.models import Companion, PersonalityTraits
from companion.registry.repositories import CompanionRepository


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64
MAX_INTERESTS = 20
MAX_INTEREST_LENGTH = 64


def _clean_interests(interests: Iterable[Any] | None) -> tuple[str, ...]:
    if interests is None:
        return ()
    if isinstance(interests, str):
        raise ValidationError("Interests must be a list of strings")

    cleaned: list[str] = []
    for item in interests:
        if not isinstance(item, str):
            raise ValidationError("Interests must be a list of strings")
        value = item.strip()
        if not value:
            continue
        if len(value) > MAX_INTEREST_LENGTH:
            raise ValidationError(f"Interest '{value[:20]}...' is too long")
        if value.lower() not in (c.lower() for c in cleaned):
            cleaned.append(value)

    if len(cleaned) > MAX_INTERESTS:
        raise ValidationError(f"At most {MAX_INTERESTS} interests are allowed")
    return tuple(cleaned)


class CompanionRegistry:

    def __init__(
        self,
        repository: CompanionRepository,
        generation: GenerationProvider,
        settings: GenerationSettings | None = None,
    ) -> None:
        self.repository = repository
        self.generation = generation
        self.settings = settings or GenerationSettings()
        self._mutations: dict[str, asyncio.Lock] = {}

    def _mutation_lock(self, companion_id: str) -> asyncio.Lock:
        """Serializes read-modify-write cycles on one companion record."""
        lock = self._mutations.get(companion_id)
        if lock is None:
            lock = self._mutations[companion_id] = asyncio.Lock()
        return lock

    async def create(
        self,
        owner_id: str,
        name: str,
        traits: Mapping[str, Any] | PersonalityTraits | None,
        interests: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> Companion:
        if not owner_id or not str(owner_id).strip():
            raise ValidationError("owner_id is required")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Companion name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Companion name must be at most {MAX_NAME_LENGTH} characters")

        if not isinstance(traits, PersonalityTraits):
            traits = PersonalityTraits.from_mapping(traits)
        interests = _clean_interests(interests)

        if await asyncio.to_thread(self.repository.get_by_owner, owner_id) is not None:
            raise ValidationError(f"Owner {owner_id} already has a companion")

        try:
            description = await asyncio.wait_for(
                generate_description(self.generation, name, traits, interests),
                timeout=self.settings.description_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout("Companion description generation timed out") from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Companion description generation failed")
            raise GenerationFailure("Companion description generation failed") from exc

        companion = Companion(
            id=uuid.uuid4().hex,
            owner_id=str(owner_id),
            name=name,
            traits=traits,
            description=description,
            created_at=now or datetime.now(timezone.utc),
            interests=interests,
        )
        await asyncio.to_thread(self.repository.add, companion)

        logger.info(
            "Companion %s created for owner %s (style: %s)",
            companion.id,
            owner_id,
            companion.communication_style,
        )
        return companion

    async def get(self, companion_id: str) -> Companion:
        companion = await asyncio.to_thread(self.repository.get, companion_id)
        if companion is None:
            raise NotFound(f"Companion {companion_id} not found")
        return companion

    async def get_by_owner(self, owner_id: str) -> Companion:
        companion = await asyncio.to_thread(self.repository.get_by_owner, owner_id)
        if companion is None:
            raise NotFound(f"No companion for owner {owner_id}")
        return companion

    def relationship_increment(self, companion: Companion) -> float:
        return self.settings.relationship_increment * (1.0 + 0.5 * companion.traits.agreeableness)

    async def record_turn(self, companion_id: str, turn_id: str, at: datetime | None = None) -> Companion:
        async with self._mutation_lock(companion_id):
            companion = await self.get(companion_id)
            if companion.last_turn_id == turn_id:
                logger.warning("Turn %s already recorded for companion %s", turn_id, companion_id)
                return companion

            updated = companion.with_turn(
                turn_id,
                at or datetime.now(timezone.utc),
                self.relationship_increment(companion),
            )
            await asyncio.to_thread(self.repository.save, updated)
            return updated

    async def deactivate(self, companion_id: str) -> Companion:
        async with self._mutation_lock(companion_id):
            companion = await self.get(companion_id)
            if not companion.active:
                return companion
            updated = replace(companion, active=False)
            await asyncio.to_thread(self.repository.save, updated)
        logger.info("Companion %s deactivated", companion_id)
        return updated

    async def delete(self, companion_id: str) -> bool:
        """Hard-delete the record. Callers must remove its memories first."""
        async with self._mutation_lock(companion_id):
            removed = await asyncio.to_thread(self.repository.delete, companion_id)
        self._mutations.pop(companion_id, None)
        return removed
