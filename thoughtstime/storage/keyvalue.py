"""Key-value backend: items and settings as two JSON blobs in the host store."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Sequence

from thoughtstime.storage.base import StorageProvider
from thoughtstime.storage.errors import CorruptDataError
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.models import (
    ITEMS_KEY,
    SETTINGS_KEY,
    ItemsState,
    Settings,
    StorageResult,
    StorageType,
)

logger = logging.getLogger(__name__)

PROBE_KEY = "__storage_test__"
PERSIST_FORMAT_VERSION = 0


class KeyValueStorageProvider(StorageProvider):
    """Thin backend over the host key-value store.

    Blobs are written in the reactive stores' persist format
    (``{"state": ..., "version": 0}``) so those stores can read them directly
    before the manager is up. Reads also accept a bare, unwrapped value.
    """

    type = StorageType.KEY_VALUE

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def initialize(self) -> StorageResult[None]:
        if await self.is_available():
            return StorageResult.ok()
        return StorageResult.fail("Key-value storage is not available")

    async def is_available(self) -> bool:
        try:
            self.kv.set_item(PROBE_KEY, PROBE_KEY)
            self.kv.remove_item(PROBE_KEY)
            return True
        except Exception as e:
            logger.warning("Host store probe failed: %s", e)
            return False

    async def get_items(self) -> StorageResult[ItemsState]:
        try:
            state = self._read_state(ITEMS_KEY)
            return StorageResult.ok(ItemsState.from_dict(state))
        except Exception as e:
            logger.warning("Reading items failed: %s", e)
            return StorageResult.fail(f"Failed to read items: {e}")

    async def set_items(self, state: ItemsState) -> StorageResult[None]:
        try:
            self._write_state(ITEMS_KEY, state.to_dict())
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Saving %d items failed: %s", len(state.items), e)
            return StorageResult.fail(f"Failed to save items: {e}")

    async def get_settings(self) -> StorageResult[Settings]:
        try:
            state = self._read_state(SETTINGS_KEY)
            return StorageResult.ok(Settings.from_dict(state))
        except Exception as e:
            logger.warning("Reading settings failed: %s", e)
            return StorageResult.fail(f"Failed to read settings: {e}")

    async def set_settings(self, settings: Settings) -> StorageResult[None]:
        try:
            self._write_state(SETTINGS_KEY, settings.to_dict())
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Saving settings failed: %s", e)
            return StorageResult.fail(f"Failed to save settings: {e}")

    async def clear(self) -> StorageResult[None]:
        try:
            self.kv.remove_item(ITEMS_KEY)
            self.kv.remove_item(SETTINGS_KEY)
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Clearing key-value storage failed: %s", e)
            return StorageResult.fail(f"Failed to clear storage: {e}")

    async def close(self) -> None:
        # Every write already went to the host store.
        pass

    def storage_keys(self) -> Sequence[str]:
        return (ITEMS_KEY, SETTINGS_KEY)

    # --- Helpers ---

    def _read_state(self, key: str) -> Optional[Dict[str, Any]]:
        stored = self.kv.get_item(key)
        if not stored:
            return None
        try:
            parsed = json.loads(stored)
        except ValueError as e:
            raise CorruptDataError(f"{key!r} is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise CorruptDataError(f"expected an object under {key!r}, got {type(parsed).__name__}")
        state = parsed.get("state")
        return state if isinstance(state, dict) else parsed

    def _write_state(self, key: str, state: Dict[str, Any]) -> None:
        self.kv.set_item(
            key,
            json.dumps({"state": state, "version": PERSIST_FORMAT_VERSION}),
        )
