"""Persistence adapters for reactive state stores.

A store only ever asks to get, set or remove "the named blob". The async
adapters route that to the manager's active backend and drop down to the host
key-value store when the manager is not usable yet (the boot window before
``initialize()``). The sync adapter always talks to the host store directly.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from thoughtstime.storage.base import StorageProvider
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.models import (
    ITEMS_KEY,
    SETTINGS_KEY,
    ItemsState,
    Settings,
    StorageResult,
)

logger = logging.getLogger(__name__)

PersistedValue = Dict[str, Any]  # {"state": {...}, "version": 0}


def wrap_state(state: Dict[str, Any], version: int = 0) -> PersistedValue:
    return {"state": state, "version": version}


class ProviderStorageAdapter(ABC):
    """get/set/remove against the active backend, falling back to the host store."""

    key: str

    def __init__(self, manager=None, kv: Optional[KeyValueStore] = None):
        self._manager = manager
        self._kv = kv

    @property
    def manager(self):
        if self._manager is None:
            from thoughtstime.storage.manager import get_storage_manager

            return get_storage_manager()
        return self._manager

    @property
    def kv(self) -> KeyValueStore:
        return self._kv if self._kv is not None else self.manager.kv

    async def get_item(self, name: str) -> Optional[PersistedValue]:
        if name != self.key:
            return None
        try:
            result = await self._read(self.manager.get_provider())
            if result.success and result.data is not None:
                return wrap_state(result.data)
            logger.warning("Reading %s from storage failed: %s", name, result.error)
            return None
        except Exception as e:
            logger.debug("Storage manager not usable for %s (%s); reading host store", name, e)
            return SyncStorageAdapter(self.kv).get_item(name)

    async def set_item(self, name: str, value: PersistedValue) -> None:
        if name != self.key:
            return
        try:
            result = await self._write(self.manager.get_provider(), value.get("state") or {})
            if not result.success:
                logger.warning("Writing %s to storage failed: %s", name, result.error)
        except Exception as e:
            logger.debug("Storage manager not usable for %s (%s); writing host store", name, e)
            SyncStorageAdapter(self.kv).set_item(name, value)

    async def remove_item(self, name: str) -> None:
        if name != self.key:
            return
        try:
            result = await self._reset(self.manager.get_provider())
            if not result.success:
                logger.warning("Resetting %s in storage failed: %s", name, result.error)
        except Exception as e:
            logger.debug("Storage manager not usable for %s (%s); removing from host store", name, e)
            SyncStorageAdapter(self.kv).remove_item(name)

    @abstractmethod
    async def _read(self, provider: StorageProvider) -> StorageResult[Dict[str, Any]]:
        ...

    @abstractmethod
    async def _write(self, provider: StorageProvider, state: Dict[str, Any]) -> StorageResult[None]:
        ...

    @abstractmethod
    async def _reset(self, provider: StorageProvider) -> StorageResult[None]:
        ...


class ItemsStorageAdapter(ProviderStorageAdapter):
    key = ITEMS_KEY

    async def _read(self, provider: StorageProvider) -> StorageResult[Dict[str, Any]]:
        result = await provider.get_items()
        if not result.success or result.data is None:
            return StorageResult.fail(result.error or "no items")
        return StorageResult.ok(result.data.to_dict())

    async def _write(self, provider: StorageProvider, state: Dict[str, Any]) -> StorageResult[None]:
        return await provider.set_items(ItemsState.from_dict(state))

    async def _reset(self, provider: StorageProvider) -> StorageResult[None]:
        return await provider.set_items(ItemsState())


class SettingsStorageAdapter(ProviderStorageAdapter):
    key = SETTINGS_KEY

    async def _read(self, provider: StorageProvider) -> StorageResult[Dict[str, Any]]:
        result = await provider.get_settings()
        if not result.success or result.data is None:
            return StorageResult.fail(result.error or "no settings")
        return StorageResult.ok(result.data.to_dict())

    async def _write(self, provider: StorageProvider, state: Dict[str, Any]) -> StorageResult[None]:
        return await provider.set_settings(Settings.from_dict(state))

    async def _reset(self, provider: StorageProvider) -> StorageResult[None]:
        return await provider.set_settings(Settings())


class SyncStorageAdapter:
    """Direct host-store adapter, usable before the manager is initialized."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def get_item(self, name: str) -> Optional[PersistedValue]:
        stored = self.kv.get_item(name)
        if not stored:
            return None
        try:
            return json.loads(stored)
        except ValueError:
            logger.warning("Ignoring unreadable value under %s", name)
            return None

    def set_item(self, name: str, value: PersistedValue) -> None:
        self.kv.set_item(name, json.dumps(value))

    def remove_item(self, name: str) -> None:
        self.kv.remove_item(name)
