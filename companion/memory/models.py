"""Memory record type owned by the memory store."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Memory:
    """One stored fact or exchange summary belonging to a companion.

    Content and embedding never change after the write. `access_count`,
    `last_accessed_at` and `importance` are updated through copies made by the
    store (`with_access`, `with_importance`).
    """

    id: str
    companion_id: str
    content: str
    embedding: tuple[float, ...]
    created_at: datetime
    importance: float = 1.0
    category: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    access_count: int = 0
    last_accessed_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def last_touched_at(self) -> datetime:
        return self.last_accessed_at or self.created_at

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def copy(self) -> "Memory":
        """Copy with its own metadata dict; stored rows never share one with callers."""
        return replace(self, metadata=dict(self.metadata))

    def with_access(self, accessed_at: datetime) -> "Memory":
        return replace(
            self,
            metadata=dict(self.metadata),
            access_count=self.access_count + 1,
            last_accessed_at=accessed_at,
        )

    def with_importance(self, importance: float) -> "Memory":
        return replace(self, metadata=dict(self.metadata), importance=importance)

    def to_record(self) -> dict[str, Any]:
        """Serialize everything except the embedding (kept in the vector index)."""
        return {
            "id": self.id,
            "companion_id": self.companion_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "importance": self.importance,
            "category": self.category,
            "metadata": dict(self.metadata),
            "access_count": self.access_count,
            "last_accessed_at": _iso(self.last_accessed_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], embedding) -> "Memory":
        return cls(
            id=record["id"],
            companion_id=record["companion_id"],
            content=record["content"],
            embedding=tuple(float(x) for x in embedding),
            created_at=datetime.fromisoformat(record["created_at"]),
            importance=float(record.get("importance", 1.0)),
            category=record.get("category"),
            metadata=dict(record.get("metadata") or {}),
            access_count=int(record.get("access_count", 0)),
            last_accessed_at=_parse(record.get("last_accessed_at")),
            expires_at=_parse(record.get("expires_at")),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
