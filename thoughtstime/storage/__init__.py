"""Storage layer - two interchangeable backends behind a migrating manager."""

from thoughtstime.storage.base import StorageProvider
from thoughtstime.storage.bridge import (
    ItemsStorageAdapter,
    SettingsStorageAdapter,
    SyncStorageAdapter,
)
from thoughtstime.storage.keyvalue import KeyValueStorageProvider
from thoughtstime.storage.kvstore import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from thoughtstime.storage.manager import StorageManager, get_storage_manager, set_storage_manager
from thoughtstime.storage.models import (
    ItemsState,
    MigrationProgress,
    Settings,
    StorageResult,
    StorageSnapshot,
    StorageType,
)
from thoughtstime.storage.relational import RelationalStorageProvider

__all__ = [
    "StorageProvider", "KeyValueStorageProvider", "RelationalStorageProvider",
    "StorageManager", "get_storage_manager", "set_storage_manager",
    "KeyValueStore", "MemoryKeyValueStore", "FileKeyValueStore",
    "ItemsStorageAdapter", "SettingsStorageAdapter", "SyncStorageAdapter",
    "ItemsState", "Settings", "StorageSnapshot", "StorageResult", "StorageType",
    "MigrationProgress",
]
