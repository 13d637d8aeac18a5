"""Base storage provider interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Sequence

from thoughtstime.storage.models import (
    ItemsState,
    Settings,
    StorageResult,
    StorageSnapshot,
    StorageType,
)

logger = logging.getLogger(__name__)


class StorageProvider(ABC):
    """Abstract base for storage backends.

    Every operation is a coroutine returning a StorageResult; failures are
    reported through the result and never raised to the caller. Reads create
    default values when nothing is stored, and writes always replace the
    whole value.
    """

    type: StorageType

    @abstractmethod
    async def initialize(self) -> StorageResult[None]:
        """Prepare the backend (probe the host store, open the database)."""
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def get_items(self) -> StorageResult[ItemsState]:
        ...

    @abstractmethod
    async def set_items(self, state: ItemsState) -> StorageResult[None]:
        ...

    @abstractmethod
    async def get_settings(self) -> StorageResult[Settings]:
        ...

    @abstractmethod
    async def set_settings(self, settings: Settings) -> StorageResult[None]:
        ...

    @abstractmethod
    async def clear(self) -> StorageResult[None]:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush anything held in memory to the durable store and release it."""
        ...

    def storage_keys(self) -> Sequence[str]:
        """Host store keys this backend writes to."""
        return ()

    async def export_all(self) -> StorageResult[StorageSnapshot]:
        """Read items and settings into one snapshot."""
        try:
            items = await self.get_items()
            if not items.success or items.data is None:
                return StorageResult.fail(items.error or "Failed to export items")

            settings = await self.get_settings()
            if not settings.success or settings.data is None:
                return StorageResult.fail(settings.error or "Failed to export settings")

            return StorageResult.ok(StorageSnapshot.create(items.data, settings.data))
        except Exception as e:
            logger.warning("%s export failed: %s", self.type.value, e)
            return StorageResult.fail(f"Failed to export data: {e}")

    async def import_all(self, snapshot: StorageSnapshot) -> StorageResult[None]:
        """Replace items and settings with the snapshot's contents."""
        try:
            result = await self.set_items(snapshot.items)
            if not result.success:
                return result

            result = await self.set_settings(snapshot.settings)
            if not result.success:
                return result

            return StorageResult.ok()
        except Exception as e:
            logger.warning("%s import failed: %s", self.type.value, e)
            return StorageResult.fail(f"Failed to import data: {e}")
