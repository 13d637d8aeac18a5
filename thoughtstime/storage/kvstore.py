"""Host durable key-value store: string keys to string values, with a capacity."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from thoughtstime.storage.errors import QuotaExceededError, StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5 * 1024 * 1024  # same order as a browser origin's quota


class KeyValueStore(ABC):
    """Synchronous string store. Writes past ``capacity`` raise QuotaExceededError."""

    def __init__(self, capacity: Optional[int] = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._data: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"value for {key!r} must be str, not {type(value).__name__}")
        if self.capacity is not None:
            current = len(key) + len(self._data[key]) if key in self._data else 0
            needed = self.used_bytes() - current + len(key) + len(value)
            if needed > self.capacity:
                raise QuotaExceededError(
                    f"Quota exceeded writing {key!r}: {needed} > {self.capacity} bytes"
                )
        previous = self._data.get(key)
        self._data[key] = value
        try:
            self._flush()
        except Exception:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def remove_item(self, key: str) -> None:
        if key not in self._data:
            return
        previous = self._data.pop(key)
        try:
            self._flush()
        except Exception:
            self._data[key] = previous
            raise

    def keys(self) -> List[str]:
        return list(self._data)

    def used_bytes(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def __contains__(self, key: object) -> bool:
        return key in self._data

    @abstractmethod
    def _flush(self) -> None:
        """Make the current mapping durable."""


class MemoryKeyValueStore(KeyValueStore):
    """Process-lifetime store, used by tests and throwaway sessions."""

    def __init__(self, capacity: Optional[int] = None):
        super().__init__(capacity)

    def _flush(self) -> None:
        pass


class FileKeyValueStore(KeyValueStore):
    """Keeps the whole mapping in one JSON file, rewritten atomically on every change.

    Usage:
        kv = FileKeyValueStore("data/thoughts-time.json")
        kv.set_item("thoughts-time-settings", '{"state": {...}, "version": 0}')
    """

    def __init__(self, path: str, capacity: Optional[int] = DEFAULT_CAPACITY):
        super().__init__(capacity)
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            # A torn file should not brick the app; start empty and keep a copy.
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.warning("Host store %s is not valid JSON (%s); moved to %s", self.path, e, backup)
            os.replace(self.path, backup)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Host store %s does not hold an object; ignoring it", self.path)
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".kv-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, separators=(",", ":"))
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {self.path}: {e}") from e
