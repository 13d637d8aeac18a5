"""Boot-time glue between the storage manager and the reactive stores."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, List, Optional, Union

from thoughtstime.storage.bridge import wrap_state
from thoughtstime.storage.manager import ProgressCallback, StorageManager
from thoughtstime.storage.models import (
    ITEMS_KEY,
    SETTINGS_KEY,
    ItemsState,
    Settings,
    StorageResult,
    StorageType,
)

logger = logging.getLogger(__name__)


class StorageInitializer:
    """Reconciles the reactive stores with the active backend.

    On start the manager is initialized. When the relational backend is
    active its data is mirrored into the host store in the stores' persist
    format and both stores rehydrate from it. Afterwards every store change is
    written through to the relational backend for as long as it stays active.

    Startup errors are recorded in ``error`` and never raised, so the
    application can still run on whatever the stores hold.
    """

    def __init__(self, manager: StorageManager, items_store: Any, settings_store: Any):
        self.manager = manager
        self.items_store = items_store
        self.settings_store = settings_store
        self.ready = False
        self.error: Optional[str] = None
        self._unsubscribers: List[Callable[[], None]] = []

    async def start(self) -> None:
        try:
            result = await self.manager.initialize()
            if not result.success:
                raise RuntimeError(result.error)
            if self.manager.get_active_storage_type() is StorageType.RELATIONAL:
                await self._load_from_backend()
        except Exception as e:
            logger.error("Failed to initialize storage: %s", e)
            self.error = str(e) or "Storage initialization failed"

        self.ready = True
        self._subscribe()

    async def migrate(
        self,
        target: Union[StorageType, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> StorageResult[None]:
        """Migrate, then reload both stores from the newly active backend."""
        result = await self.manager.migrate(target, on_progress)
        if result.success:
            try:
                await self._load_from_backend()
            except Exception as e:
                logger.warning("Reloading stores after migration failed: %s", e)
        return result

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.ready = False

    async def _load_from_backend(self) -> None:
        provider = self.manager.get_provider()

        items = await provider.get_items()
        if items.success and items.data is not None:
            self.manager.kv.set_item(ITEMS_KEY, json.dumps(wrap_state(items.data.to_dict())))
            await self.items_store.rehydrate()
        else:
            logger.warning("Could not load items from %s: %s", provider.type.value, items.error)

        settings = await provider.get_settings()
        if settings.success and settings.data is not None:
            self.manager.kv.set_item(SETTINGS_KEY, json.dumps(wrap_state(settings.data.to_dict())))
            await self.settings_store.rehydrate()
        else:
            logger.warning("Could not load settings from %s: %s", provider.type.value, settings.error)

    def _subscribe(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.items_store.subscribe(self._sync_items),
            self.settings_store.subscribe(self._sync_settings),
        ]

    async def _sync_items(self, state, previous) -> None:
        if not self._relational_active():
            return
        result = await self.manager.get_provider().set_items(ItemsState.from_dict(state))
        if not result.success:
            logger.error("Failed to sync items to relational storage: %s", result.error)

    async def _sync_settings(self, state, previous) -> None:
        if not self._relational_active():
            return
        result = await self.manager.get_provider().set_settings(Settings.from_dict(state))
        if not result.success:
            logger.error("Failed to sync settings to relational storage: %s", result.error)

    def _relational_active(self) -> bool:
        try:
            return (
                self.manager.is_initialized
                and self.manager.get_active_storage_type() is StorageType.RELATIONAL
            )
        except Exception as e:
            logger.debug("Skipping write-through: %s", e)
            return False
