"""Typed error taxonomy shared by every engine layer.

Architectural role:
    Gives transports one exception family to translate into the `{code, message}`
    error envelope. Each class carries the stable `code` string exposed to callers.

Propagation model:
    - `ValidationError` is raised before any provider call.
    - `NotFound` and `Busy` are raised while a turn is being admitted.
    - `ProviderError` subclasses abort the current turn only.
    - `StorageFailure` is raised by the memory store; the coordinator decides
      whether it degrades (retrieval) or is only reported (commit).
"""


class CompanionError(Exception):
    """Base class for all engine errors."""

    code = "InternalError"

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.reason = reason

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.reason:
            payload["reason"] = self.reason
        return payload


class ValidationError(CompanionError):
    code = "ValidationError"


class NotFound(CompanionError):
    code = "NotFound"


class Busy(CompanionError):
    """A generation session is already in flight for the companion."""

    code = "Busy"


class ProviderError(CompanionError):
    """Failure of an external provider call; fatal to the current turn."""

    code = "GenerationFailure"


class GenerationFailure(ProviderError):
    code = "GenerationFailure"


class EmbeddingFailure(ProviderError):
    # Exposed through the generation failure code; `reason` keeps it distinguishable.
    code = "GenerationFailure"

    def __init__(self, message: str = "", *, reason: str | None = "embedding") -> None:
        super().__init__(message, reason=reason)


class ProviderTimeout(ProviderError):
    code = "Timeout"


class StorageFailure(CompanionError):
    code = "StorageFailure"


class TurnCancelled(CompanionError):
    """The caller cancelled the turn or went away before it completed."""

    code = "Cancelled"
