"""Relational backend: an embedded SQLite database flushed wholesale to the host store.

Items are rows with a JSON payload, settings are key/value rows. The whole
database is serialized after every successful write, which keeps the
deployment serverless and gives structured storage for future querying, but
limits it to personal-sized datasets.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from thoughtstime.storage.base import StorageProvider
from thoughtstime.storage.blobdb import BlobDatabase
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.migrations import items_migrations
from thoughtstime.storage.models import (
    SQLITE_DB_KEY,
    ItemsState,
    Settings,
    StorageResult,
    StorageType,
    revive_item_dates,
    serialize_item_dates,
)

logger = logging.getLogger(__name__)

NOT_INITIALIZED = "Database not initialized"


class RelationalStorageProvider(StorageProvider):
    """StorageProvider backed by an in-memory SQLite image.

    Usage:
        provider = RelationalStorageProvider(kv)
        result = await provider.initialize()
        await provider.set_items(ItemsState(items=[...]))
        await provider.close()
    """

    type = StorageType.RELATIONAL

    def __init__(self, kv: KeyValueStore, image_key: str = SQLITE_DB_KEY):
        self.kv = kv
        self.db = BlobDatabase(kv, image_key, items_migrations)

    async def initialize(self) -> StorageResult[None]:
        try:
            await self.db.open()
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Relational backend unavailable: %s", e)
            return StorageResult.fail(f"Failed to initialize SQLite: {e}")

    async def is_available(self) -> bool:
        return self.db.is_open

    async def get_items(self) -> StorageResult[ItemsState]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            # set_items rewrites every row, so rowid is the caller's list order.
            rows = await self.db.fetchall(
                "SELECT data FROM items ORDER BY rowid ASC"
            )
            items = [revive_item_dates(json.loads(row["data"])) for row in rows]
            flag = await self.db.fetchone(
                "SELECT value FROM metadata WHERE key = 'skip_history'"
            )
            skip_history = bool(flag) and flag["value"] == "1"
            return StorageResult.ok(ItemsState(items=items, skip_history=skip_history))
        except Exception as e:
            logger.warning("Reading items failed: %s", e)
            return StorageResult.fail(f"Failed to read items: {e}")

    async def set_items(self, state: ItemsState) -> StorageResult[None]:
        """Replace every stored item in one transaction, then persist the image."""
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            rows = [_item_to_row(item) for item in state.items]
            async with self.db.transaction() as conn:
                await conn.execute("DELETE FROM items")
                await conn.executemany(
                    """INSERT INTO items (id, type, data, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    rows,
                )
                await conn.execute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES ('skip_history', ?)",
                    ("1" if state.skip_history else "0",),
                )
            await self.db.persist()
            logger.debug("Stored %d items", len(rows))
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Saving %d items failed: %s", len(state.items), e)
            return StorageResult.fail(f"Failed to save items: {e}")

    async def get_settings(self) -> StorageResult[Settings]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            rows = await self.db.fetchall("SELECT key, value FROM settings")
            # Unknown keys are ignored, missing ones fall back to defaults.
            return StorageResult.ok(Settings.from_dict({row["key"]: row["value"] for row in rows}))
        except Exception as e:
            logger.warning("Reading settings failed: %s", e)
            return StorageResult.fail(f"Failed to read settings: {e}")

    async def set_settings(self, settings: Settings) -> StorageResult[None]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            async with self.db.transaction() as conn:
                await conn.executemany(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    [(key, str(value)) for key, value in settings.to_dict().items()],
                )
            await self.db.persist()
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Saving settings failed: %s", e)
            return StorageResult.fail(f"Failed to save settings: {e}")

    async def clear(self) -> StorageResult[None]:
        try:
            if not self.db.is_open:
                # Never opened in this process: dropping the image is enough.
                self.db.discard_image()
                return StorageResult.ok()
            async with self.db.transaction() as conn:
                await conn.execute("DELETE FROM items")
                await conn.execute("DELETE FROM settings")
                await conn.execute("DELETE FROM metadata WHERE key = 'skip_history'")
            await self.db.persist()
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Clearing relational storage failed: %s", e)
            return StorageResult.fail(f"Failed to clear storage: {e}")

    async def close(self) -> None:
        await self.db.close()

    def storage_keys(self) -> Sequence[str]:
        return (self.db.image_key,)


def _item_to_row(item: Dict[str, Any]) -> Tuple[str, str, str, str, str]:
    if not item.get("id"):
        raise ValueError("every item needs an id")
    data = serialize_item_dates(item)
    return (
        str(item["id"]),
        str(item.get("type") or ""),
        json.dumps(data),
        _ts(item.get("createdAt")),
        _ts(item.get("updatedAt")),
    )


def _ts(value: Optional[Any]) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return "" if value is None else str(value)
