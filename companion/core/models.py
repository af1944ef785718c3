"""Turn-level request/response types shared by the coordinator and transports."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from companion.errors import ValidationError


USER_ROLE = "user"
COMPANION_ROLE = "companion"
_ROLE_ALIASES = {"user": USER_ROLE, "companion": COMPANION_ROLE, "assistant": COMPANION_ROLE}


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        role = _ROLE_ALIASES.get(str(self.role).lower())
        if role is None:
            raise ValidationError(f"Unknown conversation role: {self.role}")
        object.__setattr__(self, "role", role)

    @property
    def chat_role(self) -> str:
        return "assistant" if self.role == COMPANION_ROLE else "user"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConversationTurn":
        if not isinstance(data, Mapping):
            raise ValidationError("History entries must be objects")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            try:
                timestamp = datetime.fromisoformat(timestamp)
            except ValueError as exc:
                raise ValidationError(f"Invalid history timestamp: {timestamp}") from exc
        kwargs = {"role": data.get("role", ""), "content": str(data.get("content", ""))}
        if timestamp is not None:
            kwargs["timestamp"] = timestamp
        return cls(**kwargs)


def conversation_window(turns: Iterable[ConversationTurn], size: int) -> list[ConversationTurn]:
    """Keep only the most recent `size` turns, oldest first."""
    turns = list(turns)
    if size <= 0:
        return []
    return turns[-size:]


@dataclass(frozen=True)
class ChatRequest:
    companion_id: str
    message: str
    history: tuple[ConversationTurn, ...] = field(default_factory=tuple)
    context: Any = None

    @classmethod
    def build(
        cls,
        companion_id: str,
        message: str,
        history: Iterable[ConversationTurn | Mapping[str, Any]] = (),
        context: Any = None,
    ) -> "ChatRequest":
        turns = tuple(
            h if isinstance(h, ConversationTurn) else ConversationTurn.from_mapping(h)
            for h in (history or ())
        )
        return cls(companion_id=companion_id, message=message, history=turns, context=context)


@dataclass(frozen=True)
class ChatResponse:
    text: str
    emotion: dict[str, Any]
    suggestions: list[str]
    tokens_used: int
    processing_time_ms: int
    turn_id: str
    memories_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "emotion": self.emotion,
            "suggestions": list(self.suggestions),
            "metadata": {
                "tokensUsed": self.tokens_used,
                "processingTimeMs": self.processing_time_ms,
                "turnId": self.turn_id,
                "memoriesUsed": self.memories_used,
            },
        }


@dataclass(frozen=True)
class StreamEvent:
    """One event of a streamed turn: `chunk`*, then `complete` or `error`."""

    type: str
    content: str = ""
    finished: bool = False
    message: str = ""
    code: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type="chunk", content=content, finished=False)

    @classmethod
    def complete(cls, **data: Any) -> "StreamEvent":
        return cls(type="complete", finished=True, data=data)

    @classmethod
    def error(cls, code: str, message: str) -> "StreamEvent":
        return cls(type="error", finished=True, code=code, message=message)

    @property
    def terminal(self) -> bool:
        return self.type in ("complete", "error")

    def to_dict(self) -> dict[str, Any]:
        if self.type == "chunk":
            return {"type": "chunk", "content": self.content, "finished": False}
        if self.type == "error":
            return {"type": "error", "code": self.code, "message": self.message}
        return {"type": "complete", **self.data}
