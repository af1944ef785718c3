"""Runtime configuration for the companion engine.

Architectural role:
    Centralizes every tunable used by the memory store, the coordinator and the
    provider adapters. Values come from the process environment (optionally
    populated from a `.env` file) and are frozen once constructed.

Resolution:
    Each settings class has plain defaults and a `from_env()` constructor. Tests
    build settings directly; `companion.core.engine.build_engine` uses
    `EngineSettings.from_env()` when nothing is passed in.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


SECONDS_PER_DAY = 24 * 60 * 60


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def load_key(path):
    """Load API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from file stem (for example
           `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Edge cases:
        - `None` path returns `None`.
        - Missing file returns `None`.
    """
    if not path:
        return None
    key_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(key_name)
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip()


@dataclass(frozen=True)
class RetrievalSettings:
    """Hybrid ranking and decay parameters for the memory store."""

    alpha: float = 0.6
    beta: float = 0.25
    gamma: float = 0.15
    tau_seconds: float = 7 * SECONDS_PER_DAY
    default_k: int = 5
    decay_factor: float = 0.9
    importance_floor: float = 0.05

    @classmethod
    def from_env(cls) -> "RetrievalSettings":
        return cls(
            alpha=_env_float("MEMORY_ALPHA", cls.alpha),
            beta=_env_float("MEMORY_BETA", cls.beta),
            gamma=_env_float("MEMORY_GAMMA", cls.gamma),
            tau_seconds=_env_float("MEMORY_TAU_SECONDS", cls.tau_seconds),
            default_k=_env_int("MEMORY_TOP_K", cls.default_k),
            decay_factor=_env_float("MEMORY_DECAY_FACTOR", cls.decay_factor),
            importance_floor=_env_float("MEMORY_IMPORTANCE_FLOOR", cls.importance_floor),
        )


@dataclass(frozen=True)
class GenerationSettings:
    """Turn-level generation parameters and provider deadlines (seconds)."""

    max_tokens: int = 500
    temperature: float = 0.8
    window_size: int = 10
    max_message_chars: int = 4000
    embed_timeout: float = 10.0
    generation_timeout: float = 60.0
    stream_timeout: float = 120.0
    sentiment_timeout: float = 10.0
    suggestion_timeout: float = 8.0
    description_timeout: float = 30.0
    suggestion_count: int = 3
    relationship_increment: float = 1.0

    @classmethod
    def from_env(cls) -> "GenerationSettings":
        return cls(
            max_tokens=_env_int("GENERATION_MAX_TOKENS", cls.max_tokens),
            temperature=_env_float("GENERATION_TEMPERATURE", cls.temperature),
            window_size=_env_int("CONVERSATION_WINDOW", cls.window_size),
            max_message_chars=_env_int("MAX_MESSAGE_CHARS", cls.max_message_chars),
            embed_timeout=_env_float("EMBED_TIMEOUT_SECONDS", cls.embed_timeout),
            generation_timeout=_env_float("GENERATION_TIMEOUT_SECONDS", cls.generation_timeout),
            stream_timeout=_env_float("STREAM_TIMEOUT_SECONDS", cls.stream_timeout),
            sentiment_timeout=_env_float("SENTIMENT_TIMEOUT_SECONDS", cls.sentiment_timeout),
            suggestion_timeout=_env_float("SUGGESTION_TIMEOUT_SECONDS", cls.suggestion_timeout),
            description_timeout=_env_float("DESCRIPTION_TIMEOUT_SECONDS", cls.description_timeout),
            suggestion_count=_env_int("SUGGESTION_COUNT", cls.suggestion_count),
            relationship_increment=_env_float("RELATIONSHIP_INCREMENT", cls.relationship_increment),
        )


# OpenAI-compatible chat-completions endpoints selectable through `PROVIDER`.
PROVIDERS = {

    "local": {
        "url": "http://127.0.0.1:8080/v1/chat/completions",
        "key_file": None
    },

    "openai": {
        "url": "https://api.openai.com/v1/chat/completions",
        "key_file": "config/openai.key"
    },

    "groq": {
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "key_file": "config/groq.key"
    },

    "together": {
        "url": "https://api.together.xyz/v1/chat/completions",
        "key_file": "config/together.key"
    },

    "openrouter": {
        "url": "https://openrouter.ai/api/v1/chat/completions",
        "key_file": "config/openrouter.key"
    },

    "mistral": {
        "url": "https://api.mistral.ai/v1/chat/completions",
        "key_file": "config/mistral.key"
    },

}


@dataclass(frozen=True)
class ProviderSettings:
    """Generation/embedding provider selection and transport policy."""

    provider: str = "local"
    model_name: str = "qwen2.5:3b"
    api_key: str | None = None
    timeout_seconds: float = 120.0
    retry_attempts: int = 3
    backoff_seconds: float = 0.5
    embed_model: str = "intfloat/multilingual-e5-small"

    @property
    def url(self) -> str:
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unsupported PROVIDER: {self.provider}")
        return PROVIDERS[self.provider]["url"]

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        provider = _env_str("PROVIDER", cls.provider).lower()
        key_file = PROVIDERS.get(provider, {}).get("key_file")
        return cls(
            provider=provider,
            model_name=_env_str("MODEL_NAME", cls.model_name),
            api_key=load_key(key_file),
            timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", cls.timeout_seconds),
            retry_attempts=_env_int("PROVIDER_RETRY_ATTEMPTS", cls.retry_attempts),
            backoff_seconds=_env_float("PROVIDER_BACKOFF_SECONDS", cls.backoff_seconds),
            embed_model=_env_str("EMBED_MODEL", cls.embed_model),
        )


@dataclass(frozen=True)
class StorageSettings:
    """Repository and session-lock backends."""

    backend: str = "memory"
    data_dir: str = "data"
    lock_backend: str = "local"
    redis_url: str = "redis://localhost:6379/0"
    lock_ttl_seconds: int = 180

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            backend=_env_str("STORAGE_BACKEND", cls.backend).lower(),
            data_dir=_env_str("DATA_DIR", cls.data_dir),
            lock_backend=_env_str("LOCK_BACKEND", cls.lock_backend).lower(),
            redis_url=_env_str("REDIS_URL", cls.redis_url),
            lock_ttl_seconds=_env_int("LOCK_TTL_SECONDS", cls.lock_ttl_seconds),
        )


@dataclass(frozen=True)
class EngineSettings:
    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            retrieval=RetrievalSettings.from_env(),
            generation=GenerationSettings.from_env(),
            provider=ProviderSettings.from_env(),
            storage=StorageSettings.from_env(),
            log_level=_env_str("LOG_LEVEL", "INFO"),
        )
