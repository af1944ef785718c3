"""Embedding provider contract and the local sentence-transformers implementation.

Architectural role:
    The coordinator only depends on `EmbeddingProvider.embed`. The default
    implementation wraps a `SentenceTransformer` model that is loaded lazily on
    first use and reused afterwards. CPU vs CUDA is decided once, with a
    conservative VRAM gate before enabling GPU execution.

Model conventions:
    The default model (`intfloat/multilingual-e5-small`) expects `query: ` and
    `passage: ` prefixes. Incoming chat messages are embedded as queries, stored
    exchange records as passages. Vectors are L2-normalized.

Failure behavior:
    Any model load or encode failure is raised as `EmbeddingFailure`.
"""

import asyncio
import logging
import os
import re
import threading
from typing import Protocol

import numpy as np

from companion.errors import EmbeddingFailure


logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        ...


def normalize_text(text: str):
    """Normalize text before embedding.

    Returns:
        Lowercased text with punctuation reduced and spacing collapsed.
    """
    if not text:
        return ""

    text = str(text).lower()
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings."""
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


class SentenceTransformerEmbedder:
    """Local embedding provider backed by `sentence-transformers`."""

    def __init__(self, model_name: str = "intfloat/multilingual-e5-small", device: str | None = None) -> None:
        self.model_name = model_name
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        """Load and cache the model instance.

        Behavior:
            - Enables CUDA only when `has_enough_vram()` returns `True`
              (unless a device was passed explicitly).
            - Forces CPU mode by setting `CUDA_VISIBLE_DEVICES=""` otherwise.
        """
        with self._load_lock:
            if self._model is not None:
                return self._model

            logger.info("Loading embedding model %s", self.model_name)

            device = self.device
            if device is None:
                try:
                    use_gpu = has_enough_vram()
                except Exception:
                    use_gpu = False

                if not use_gpu:
                    logger.info("Insufficient VRAM detected. Forcing CPU mode.")
                    os.environ["CUDA_VISIBLE_DEVICES"] = ""
                device = "cuda" if use_gpu else "cpu"

            from sentence_transformers import SentenceTransformer

            logger.info("Loading embeddings on %s", device.upper())
            self._model = SentenceTransformer(self.model_name, device=device)
            return self._model

    @property
    def dimension(self) -> int:
        return int(self._get_model().get_sentence_embedding_dimension())

    def _encode(self, text: str, is_query: bool) -> list[float]:
        prefix = "query: " if is_query else "passage: "
        vec = self._get_model().encode([prefix + normalize_text(text)])
        vec = np.array(vec, dtype="float32")[0]
        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec = vec / norm
        return vec.tolist()

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        if not text or not str(text).strip():
            raise EmbeddingFailure("Cannot embed empty text")
        try:
            return await asyncio.to_thread(self._encode, text, is_query)
        except Exception as exc:
            logger.exception("Embedding failed")
            raise EmbeddingFailure(f"Embedding failed: {exc}") from exc
