"""Companion persistence backends.

Both backends keep a unique owner index: one companion per owner. The JSON
backend rewrites its file through a temporary file and `os.replace`, so a crash
mid-write leaves the previous state intact.
"""

import json
import logging
import os
import threading
from typing import Protocol

from companion.errors import StorageFailure, ValidationError
from companion.registry.models import Companion


logger = logging.getLogger(__name__)


class CompanionRepository(Protocol):
    def add(self, companion: Companion) -> None:
        ...

    def get(self, companion_id: str) -> Companion | None:
        ...

    def get_by_owner(self, owner_id: str) -> Companion | None:
        ...

    def save(self, companion: Companion) -> None:
        ...

    def delete(self, companion_id: str) -> bool:
        ...


class InMemoryCompanionRepository:

    def __init__(self) -> None:
        self._by_id: dict[str, Companion] = {}
        self._owner_index: dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, companion: Companion) -> None:
        with self._lock:
            if companion.owner_id in self._owner_index:
                raise ValidationError(f"Owner {companion.owner_id} already has a companion")
            self._by_id[companion.id] = companion
            self._owner_index[companion.owner_id] = companion.id

    def get(self, companion_id: str) -> Companion | None:
        with self._lock:
            return self._by_id.get(companion_id)

    def get_by_owner(self, owner_id: str) -> Companion | None:
        with self._lock:
            companion_id = self._owner_index.get(owner_id)
            return self._by_id.get(companion_id) if companion_id else None

    def save(self, companion: Companion) -> None:
        with self._lock:
            if companion.id not in self._by_id:
                raise StorageFailure(f"Companion {companion.id} does not exist")
            self._by_id[companion.id] = companion

    def delete(self, companion_id: str) -> bool:
        with self._lock:
            companion = self._by_id.pop(companion_id, None)
            if companion is None:
                return False
            self._owner_index.pop(companion.owner_id, None)
            return True


def atomic_json_save(path, data):
    """Persist JSON data atomically via temporary file replacement."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


class JsonCompanionRepository(InMemoryCompanionRepository):
    """In-memory index mirrored to `<data_dir>/companions.json` on every change."""

    FILE_NAME = "companions.json"

    def __init__(self, data_dir: str) -> None:
        super().__init__()
        self.path = os.path.join(data_dir, self.FILE_NAME)
        os.makedirs(data_dir, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                records = json.load(f)
        except Exception as exc:
            logger.exception("Failed to load companions from %s", self.path)
            raise StorageFailure(f"Could not load companions from {self.path}") from exc

        for record in records:
            companion = Companion.from_record(record)
            self._by_id[companion.id] = companion
            self._owner_index[companion.owner_id] = companion.id

    def _flush(self) -> None:
        records = [c.to_record() for c in self._by_id.values()]
        try:
            atomic_json_save(self.path, records)
        except Exception as exc:
            logger.exception("Failed to persist companions to %s", self.path)
            raise StorageFailure(f"Could not persist companions to {self.path}") from exc

    def add(self, companion: Companion) -> None:
        super().add(companion)
        try:
            with self._lock:
                self._flush()
        except StorageFailure:
            super().delete(companion.id)
            raise

    def save(self, companion: Companion) -> None:
        previous = self.get(companion.id)
        super().save(companion)
        try:
            with self._lock:
                self._flush()
        except StorageFailure:
            super().save(previous)
            raise

    def delete(self, companion_id: str) -> bool:
        previous = self.get(companion_id)
        if not super().delete(companion_id):
            return False
        try:
            with self._lock:
                self._flush()
        except StorageFailure:
            super().add(previous)
            raise
        return True
