"""Hybrid relevance scoring for memory retrieval.

Scoring model:
    score = alpha * cosine(query, memory)
          + beta  * importance / max_importance(candidates)
          + gamma * exp(-dt / tau)

    `dt` is the time since the memory was last accessed (or created when never
    accessed), clamped at zero so memories stamped in the future do not get a
    boost above 1.

Determinism:
    Pure functions of their inputs. `rank` sorts by score descending, then by
    `created_at` descending, then by `id` ascending, which is a total order.
"""

import math
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from companion.config import RetrievalSettings
from companion.memory.models import Memory


@dataclass(frozen=True)
class ScoredMemory:
    memory: Memory
    similarity: float
    importance: float
    recency: float
    score: float


def cosine_similarity(a, b) -> float:
    """Cosine similarity in [-1, 1]; zero vectors score 0.0."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def cosine_similarities(query, matrix) -> np.ndarray:
    """Vectorized cosine similarity of one query against each row of `matrix`."""
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(0, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(sims, -1.0, 1.0)


def recency_weight(memory: Memory, now: datetime, tau_seconds: float) -> float:
    delta = max(0.0, (now - memory.last_touched_at).total_seconds())
    return math.exp(-delta / tau_seconds)


def score_candidates(
    candidates: list[tuple[Memory, float]],
    now: datetime,
    settings: RetrievalSettings,
) -> list[ScoredMemory]:
    """Score `(memory, similarity)` pairs against each other.

    Importance is normalized by the largest importance among the candidates, so
    the same memory can score differently in different candidate sets; ranking
    inside one set stays consistent.
    """
    if not candidates:
        return []

    max_importance = max(memory.importance for memory, _ in candidates)

    scored = []
    for memory, similarity in candidates:
        importance = memory.importance / max_importance if max_importance > 0 else 0.0
        recency = recency_weight(memory, now, settings.tau_seconds)
        score = (
            settings.alpha * similarity +
            settings.beta * importance +
            settings.gamma * recency
        )
        scored.append(ScoredMemory(memory, similarity, importance, recency, score))
    return scored


def rank(scored: list[ScoredMemory]) -> list[ScoredMemory]:
    return sorted(
        scored,
        key=lambda s: (-s.score, -s.memory.created_at.timestamp(), s.memory.id),
    )
