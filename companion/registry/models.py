"""Companion identity record and the validated personality trait set.

Trait model:
    Five fixed traits, each a float in [0, 1]. Missing traits default to 0.5,
    unknown names and out-of-range values are rejected. The communication style
    is derived from the traits by a fixed rule table and is never stored on its
    own, so it cannot drift from the traits.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Mapping

from companion.errors import ValidationError


TRAIT_NAMES = (
    "openness",
    "conscientiousness",
    "extraversion",
    "agreeableness",
    "neuroticism",
)

DEFAULT_TRAIT_VALUE = 0.5
STYLE_THRESHOLD = 0.7
RESERVED_THRESHOLD = 0.3
DEFAULT_STYLE = "balanced and friendly"

# Evaluated in order; every matching label is kept.
STYLE_RULES = (
    ("extraversion", lambda v: v > STYLE_THRESHOLD, "enthusiastic"),
    ("agreeableness", lambda v: v > STYLE_THRESHOLD, "warm and supportive"),
    ("openness", lambda v: v > STYLE_THRESHOLD, "curious and imaginative"),
    ("conscientiousness", lambda v: v > STYLE_THRESHOLD, "thoughtful and precise"),
    ("extraversion", lambda v: v < RESERVED_THRESHOLD, "calm and reflective"),
)


@dataclass(frozen=True)
class PersonalityTraits:
    openness: float = DEFAULT_TRAIT_VALUE
    conscientiousness: float = DEFAULT_TRAIT_VALUE
    extraversion: float = DEFAULT_TRAIT_VALUE
    agreeableness: float = DEFAULT_TRAIT_VALUE
    neuroticism: float = DEFAULT_TRAIT_VALUE

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"Trait '{f.name}' must be a number")
            if not 0.0 <= float(value) <= 1.0:
                raise ValidationError(f"Trait '{f.name}' must be within [0, 1], got {value}")
            object.__setattr__(self, f.name, float(value))

    @classmethod
    def from_mapping(cls, traits: Mapping[str, Any] | None) -> "PersonalityTraits":
        traits = dict(traits or {})
        unknown = sorted(set(traits) - set(TRAIT_NAMES))
        if unknown:
            raise ValidationError(f"Unknown personality traits: {', '.join(unknown)}")
        return cls(**traits)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    @property
    def communication_style(self) -> str:
        labels = []
        for trait, rule, label in STYLE_RULES:
            if rule(getattr(self, trait)) and label not in labels:
                labels.append(label)
        return ", ".join(labels) if labels else DEFAULT_STYLE


@dataclass(frozen=True)
class Companion:
    id: str
    owner_id: str
    name: str
    traits: PersonalityTraits
    description: str
    created_at: datetime
    interests: tuple[str, ...] = field(default_factory=tuple)
    relationship_level: float = 0.0
    interaction_count: int = 0
    last_interaction_at: datetime | None = None
    active: bool = True
    last_turn_id: str | None = None

    @property
    def communication_style(self) -> str:
        return self.traits.communication_style

    def with_turn(self, turn_id: str, at: datetime, increment: float) -> "Companion":
        return replace(
            self,
            interaction_count=self.interaction_count + 1,
            relationship_level=self.relationship_level + increment,
            last_interaction_at=at,
            last_turn_id=turn_id,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "traits": self.traits.as_dict(),
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "interests": list(self.interests),
            "relationship_level": self.relationship_level,
            "interaction_count": self.interaction_count,
            "last_interaction_at": (
                self.last_interaction_at.isoformat() if self.last_interaction_at else None
            ),
            "active": self.active,
            "last_turn_id": self.last_turn_id,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Companion":
        last = record.get("last_interaction_at")
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            name=record["name"],
            traits=PersonalityTraits.from_mapping(record.get("traits")),
            description=record.get("description", ""),
            created_at=datetime.fromisoformat(record["created_at"]),
            interests=tuple(record.get("interests") or ()),
            relationship_level=float(record.get("relationship_level", 0.0)),
            interaction_count=int(record.get("interaction_count", 0)),
            last_interaction_at=datetime.fromisoformat(last) if last else None,
            active=bool(record.get("active", True)),
            last_turn_id=record.get("last_turn_id"),
        )
