"""Persistence backends for companion memories.

Architectural role:
    `MemoryStore` owns ranking and validation; repositories only keep rows and
    answer similarity lookups. Two backends are provided:
    - `InMemoryMemoryRepository`: process-local rows, numpy cosine scan. Used by
      tests and single-process development.
    - `FaissMemoryRepository`: one FAISS inner-product index per companion with
      aligned JSON metadata, both under `memories/<companion_id>/`. Vectors are
      L2-normalized so inner product equals cosine similarity.

Atomicity:
    Writes never leave a half-inserted row. The in-memory backend mutates under a
    lock. The FAISS backend writes every change as a new generation
    (`memory-<gen>.index` + `memory_meta-<gen>.json`) and then swaps
    `manifest.json`, which names the current pair, with one `os.replace`. A crash
    at any point leaves the manifest naming a complete, consistent pair. Backend
    errors surface as `StorageFailure`.

Index lifecycle:
    On first access a companion's index and metadata are loaded and reconciled by
    count (`index.ntotal == len(metadata)`). A mismatch is treated as corruption
    and raises `StorageFailure` rather than silently dropping rows.
"""

import json
import logging
import os
import shutil
import threading
import uuid
from typing import Iterable, Protocol

import faiss
import numpy as np

from companion.errors import StorageFailure
from companion.memory.models import Memory
from companion.memory.scoring import cosine_similarities


logger = logging.getLogger(__name__)


class MemoryRepository(Protocol):
    """Storage contract consumed by `MemoryStore`."""

    def insert(self, memory: Memory) -> None:
        ...

    def search(self, companion_id: str, query_embedding) -> list[tuple[Memory, float]]:
        """Return every memory of the companion paired with its cosine similarity."""
        ...

    def all_for(self, companion_id: str) -> list[Memory]:
        ...

    def update(self, companion_id: str, memories: Iterable[Memory]) -> None:
        """Replace stored rows by id (access stats, importance)."""
        ...

    def delete(self, companion_id: str, memory_ids: Iterable[str]) -> int:
        ...

    def delete_all(self, companion_id: str) -> int:
        ...

    def count(self, companion_id: str) -> int:
        ...


class InMemoryMemoryRepository:
    """Dictionary-backed repository; rows keep insertion order per companion.

    Rows are copied on the way in and out, so callers never share mutable
    metadata with the stored row.
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Memory]] = {}
        self._lock = threading.Lock()

    def insert(self, memory: Memory) -> None:
        with self._lock:
            rows = self._rows.setdefault(memory.companion_id, {})
            if memory.id in rows:
                raise StorageFailure(f"Duplicate memory id {memory.id}")
            rows[memory.id] = memory.copy()

    def search(self, companion_id: str, query_embedding) -> list[tuple[Memory, float]]:
        with self._lock:
            memories = [m.copy() for m in self._rows.get(companion_id, {}).values()]
        if not memories:
            return []
        matrix = np.array([m.embedding for m in memories], dtype=np.float64)
        sims = cosine_similarities(query_embedding, matrix)
        return [(memory, float(sim)) for memory, sim in zip(memories, sims)]

    def all_for(self, companion_id: str) -> list[Memory]:
        with self._lock:
            return [m.copy() for m in self._rows.get(companion_id, {}).values()]

    def update(self, companion_id: str, memories: Iterable[Memory]) -> None:
        with self._lock:
            rows = self._rows.get(companion_id, {})
            for memory in memories:
                if memory.id in rows:
                    rows[memory.id] = memory.copy()

    def delete(self, companion_id: str, memory_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            rows = self._rows.get(companion_id, {})
            for memory_id in memory_ids:
                if rows.pop(memory_id, None) is not None:
                    removed += 1
        return removed

    def delete_all(self, companion_id: str) -> int:
        with self._lock:
            return len(self._rows.pop(companion_id, {}))

    def count(self, companion_id: str) -> int:
        with self._lock:
            return len(self._rows.get(companion_id, {}))


class _CompanionIndex:
    """Loaded FAISS index plus metadata for one companion."""

    def __init__(self, index, records: list[dict]) -> None:
        self.index = index
        self.records = records

    def vectors(self) -> np.ndarray:
        if self.index.ntotal == 0:
            return np.zeros((0, self.index.d), dtype="float32")
        return self.index.reconstruct_n(0, self.index.ntotal)

    def memories(self) -> list[Memory]:
        vectors = self.vectors()
        return [
            Memory.from_record(record, vectors[i])
            for i, record in enumerate(self.records)
        ]


class FaissMemoryRepository:
    """File-backed repository with one FAISS `IndexFlatIP` per companion."""

    MANIFEST_FILE = "manifest.json"
    INDEX_FILE = "memory-{generation}.index"
    META_FILE = "memory_meta-{generation}.json"

    def __init__(self, root_dir: str, dimension: int) -> None:
        self.root_dir = root_dir
        self.dimension = dimension
        self._cache: dict[str, _CompanionIndex] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths and loading
    # ------------------------------------------------------------------

    def _dir(self, companion_id: str) -> str:
        return os.path.join(self.root_dir, "memories", companion_id)

    def _read_manifest(self, base: str) -> dict | None:
        manifest_path = os.path.join(base, self.MANIFEST_FILE)
        if not os.path.exists(manifest_path):
            return None
        with open(manifest_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _load(self, companion_id: str) -> _CompanionIndex:
        cached = self._cache.get(companion_id)
        if cached is not None:
            return cached

        base = self._dir(companion_id)
        try:
            manifest = self._read_manifest(base)
            if manifest is None:
                index, records = faiss.IndexFlatIP(self.dimension), []
            else:
                index = faiss.read_index(os.path.join(base, manifest["index"]))
                with open(os.path.join(base, manifest["meta"]), "r", encoding="utf-8") as f:
                    records = json.load(f)
        except Exception as exc:
            logger.exception("Failed to load memory index for companion %s", companion_id)
            raise StorageFailure(f"Could not load memories for {companion_id}") from exc

        if index.ntotal != len(records):
            raise StorageFailure(
                f"Memory index/metadata mismatch for {companion_id}: "
                f"index={index.ntotal} metadata={len(records)}"
            )

        loaded = _CompanionIndex(index, records)
        self._cache[companion_id] = loaded
        return loaded

    def _persist(self, companion_id: str, loaded: _CompanionIndex) -> None:
        """Write a new index/metadata generation, then point the manifest at it.

        The manifest swap is the single commit point: a crash before it leaves
        the previous generation in place, and unreferenced files are removed on
        the next successful write.
        """
        base = self._dir(companion_id)
        generation = uuid.uuid4().hex
        manifest = {
            "index": self.INDEX_FILE.format(generation=generation),
            "meta": self.META_FILE.format(generation=generation),
            "count": len(loaded.records),
        }
        manifest_path = os.path.join(base, self.MANIFEST_FILE)
        manifest_tmp = manifest_path + ".tmp"

        try:
            os.makedirs(base, exist_ok=True)
            faiss.write_index(loaded.index, os.path.join(base, manifest["index"]))
            with open(os.path.join(base, manifest["meta"]), "w", encoding="utf-8") as f:
                json.dump(loaded.records, f, indent=2, ensure_ascii=False)
            with open(manifest_tmp, "w", encoding="utf-8") as f:
                json.dump(manifest, f)
            os.replace(manifest_tmp, manifest_path)
        except Exception as exc:
            logger.exception("Failed to persist memory index for companion %s", companion_id)
            raise StorageFailure(f"Could not persist memories for {companion_id}") from exc

        self._remove_stale(base, keep={self.MANIFEST_FILE, manifest["index"], manifest["meta"]})

    def _remove_stale(self, base: str, keep: set[str]) -> None:
        for name in os.listdir(base):
            if name in keep:
                continue
            try:
                os.remove(os.path.join(base, name))
            except OSError:
                logger.warning("Could not remove stale memory file %s in %s", name, base)

    def _normalized(self, embedding) -> np.ndarray:
        vec = np.array([embedding], dtype="float32")
        if vec.shape[1] != self.dimension:
            raise StorageFailure(
                f"Embedding dimension {vec.shape[1]} does not match index dimension {self.dimension}"
            )
        faiss.normalize_L2(vec)
        return vec

    def _rebuild(self, memories: list[Memory]) -> _CompanionIndex:
        index = faiss.IndexFlatIP(self.dimension)
        if memories:
            vecs = np.array([m.embedding for m in memories], dtype="float32")
            faiss.normalize_L2(vecs)
            index.add(vecs)
        return _CompanionIndex(index, [m.to_record() for m in memories])

    # ------------------------------------------------------------------
    # Repository contract
    # ------------------------------------------------------------------

    def insert(self, memory: Memory) -> None:
        with self._lock:
            current = self._load(memory.companion_id)
            if any(r["id"] == memory.id for r in current.records):
                raise StorageFailure(f"Duplicate memory id {memory.id}")

            staged = _CompanionIndex(faiss.clone_index(current.index), list(current.records))
            staged.index.add(self._normalized(memory.embedding))
            staged.records.append(memory.to_record())

            self._persist(memory.companion_id, staged)
            self._cache[memory.companion_id] = staged

    def search(self, companion_id: str, query_embedding) -> list[tuple[Memory, float]]:
        with self._lock:
            loaded = self._load(companion_id)
            total = loaded.index.ntotal
            if total == 0:
                return []
            scores, positions = loaded.index.search(self._normalized(query_embedding), total)
            memories = loaded.memories()

        results = []
        for score, position in zip(scores[0], positions[0]):
            if position < 0:
                continue
            results.append((memories[position], float(np.clip(score, -1.0, 1.0))))
        return results

    def all_for(self, companion_id: str) -> list[Memory]:
        with self._lock:
            return self._load(companion_id).memories()

    def update(self, companion_id: str, memories: Iterable[Memory]) -> None:
        updates = {m.id: m for m in memories}
        if not updates:
            return
        with self._lock:
            loaded = self._load(companion_id)
            records = [
                updates[r["id"]].to_record() if r["id"] in updates else r
                for r in loaded.records
            ]
            staged = _CompanionIndex(loaded.index, records)
            self._persist(companion_id, staged)
            self._cache[companion_id] = staged

    def delete(self, companion_id: str, memory_ids: Iterable[str]) -> int:
        doomed = set(memory_ids)
        with self._lock:
            loaded = self._load(companion_id)
            keep = [m for m in loaded.memories() if m.id not in doomed]
            removed = len(loaded.records) - len(keep)
            if removed:
                staged = self._rebuild(keep)
                self._persist(companion_id, staged)
                self._cache[companion_id] = staged
            return removed

    def delete_all(self, companion_id: str) -> int:
        with self._lock:
            loaded = self._load(companion_id)
            removed = len(loaded.records)
            base = self._dir(companion_id)
            manifest_path = os.path.join(base, self.MANIFEST_FILE)
            try:
                # Dropping the manifest first makes the companion empty even if
                # the directory removal below is interrupted.
                if os.path.exists(manifest_path):
                    os.remove(manifest_path)
                if os.path.isdir(base):
                    shutil.rmtree(base)
            except OSError as exc:
                logger.exception("Failed to delete memory files for companion %s", companion_id)
                raise StorageFailure(f"Could not delete memories for {companion_id}") from exc
            self._cache.pop(companion_id, None)
            return removed

    def count(self, companion_id: str) -> int:
        with self._lock:
            return len(self._load(companion_id).records)
