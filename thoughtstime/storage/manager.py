"""Storage manager: picks the active backend and migrates data between backends."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Optional, Union

from thoughtstime.storage.base import StorageProvider
from thoughtstime.storage.errors import MigrationError, StorageNotInitializedError
from thoughtstime.storage.keyvalue import KeyValueStorageProvider
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.models import (
    METADATA_KEY,
    STORAGE_VERSION,
    BackendMetadata,
    MigrationProgress,
    StorageResult,
    StorageStats,
    StorageType,
    utc_now_iso,
)
from thoughtstime.storage.relational import RelationalStorageProvider

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MigrationProgress], None]


class StorageManager:
    """Owns both backends and decides which one is authoritative.

    Usage:
        manager = StorageManager(kv)
        await manager.initialize()
        provider = manager.get_provider()
        result = await manager.migrate(StorageType.RELATIONAL, on_progress=print)
    """

    def __init__(
        self,
        kv: KeyValueStore,
        keyvalue: Optional[StorageProvider] = None,
        relational: Optional[StorageProvider] = None,
        default_backend: StorageType = StorageType.KEY_VALUE,
    ):
        self.kv = kv
        self.keyvalue = keyvalue or KeyValueStorageProvider(kv)
        self.relational = relational or RelationalStorageProvider(kv)
        self.default_backend = default_backend
        self._current: Optional[StorageProvider] = None
        self._initialized = False
        self._migrating = False
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_migrating(self) -> bool:
        return self._migrating

    async def initialize(self) -> StorageResult[None]:
        """Open the backend named in the metadata, falling back to key-value.

        A relational backend that fails to open is replaced by the key-value
        backend and the metadata is rewritten so later boots skip it.
        Overlapping calls run the startup once.
        """
        if self._initialized:
            return StorageResult.ok()
        async with self._init_lock:
            if self._initialized:
                return StorageResult.ok()
            return await self._initialize()

    async def _initialize(self) -> StorageResult[None]:
        try:
            metadata = self.get_metadata()

            if metadata.active_storage is StorageType.RELATIONAL:
                result = await self.relational.initialize()
                if result.success:
                    self._current = self.relational
                else:
                    logger.warning(
                        "Relational initialization failed, falling back to key-value: %s",
                        result.error,
                    )
                    fallback = await self._use_keyvalue()
                    if not fallback.success:
                        return fallback
                    metadata.active_storage = StorageType.KEY_VALUE
                    try:
                        self.set_metadata(metadata)
                    except Exception as e:
                        logger.warning("Could not record key-value fallback: %s", e)
            else:
                result = await self._use_keyvalue()
                if not result.success:
                    return result

            self._initialized = True
            logger.info("Storage initialized with %s backend", self._current.type.value)
            return StorageResult.ok()
        except Exception as e:
            logger.exception("Storage initialization failed")
            return StorageResult.fail(f"Storage initialization failed: {e}")

    def get_provider(self) -> StorageProvider:
        """Return the active backend. Raises StorageNotInitializedError before initialize()."""
        if self._current is None:
            raise StorageNotInitializedError(
                "StorageManager not initialized. Call initialize() first."
            )
        return self._current

    def get_active_storage_type(self) -> StorageType:
        """The backend in use, or the one the metadata names before initialize()."""
        if self._current is not None:
            return self._current.type
        return self.get_metadata().active_storage

    # --- Metadata ---

    def get_metadata(self) -> BackendMetadata:
        try:
            stored = self.kv.get_item(METADATA_KEY)
            if stored:
                return BackendMetadata.from_dict(json.loads(stored))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable backend metadata: %s", e)
        return BackendMetadata(active_storage=self.default_backend, version=STORAGE_VERSION)

    def set_metadata(self, metadata: BackendMetadata) -> None:
        self.kv.set_item(METADATA_KEY, json.dumps(metadata.to_dict()))

    # --- Migration ---

    async def migrate(
        self,
        target: Union[StorageType, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> StorageResult[None]:
        """Copy all data to ``target`` and make it the active backend.

        Phases: exporting, importing, validating, complete. Any failure
        reports phase "error" and leaves the current backend authoritative.
        Only one migration may run at a time.
        """
        if self._migrating:
            return StorageResult.fail("A migration is already in progress")
        self._migrating = True
        try:
            try:
                target_type = StorageType.parse(target)
            except ValueError:
                return StorageResult.fail(f"Unknown storage type: {target}")
            if not self._initialized:
                return StorageResult.fail("StorageManager not initialized. Call initialize() first.")

            current_type = self.get_provider().type
            if current_type is target_type:
                return StorageResult.ok()

            return await self._run_migration(current_type, target_type, on_progress)
        finally:
            self._migrating = False

    async def _run_migration(
        self,
        current_type: StorageType,
        target_type: StorageType,
        on_progress: Optional[ProgressCallback],
    ) -> StorageResult[None]:
        def report(phase: str, percent: int, message: str) -> None:
            logger.info("Migration %s (%d%%): %s", phase, percent, message)
            if on_progress is None:
                return
            try:
                on_progress(MigrationProgress(phase=phase, percent=percent, message=message))
            except Exception as e:
                logger.warning("Progress callback raised during %s: %s", phase, e)

        source = self._provider_for(current_type)
        target = self._provider_for(target_type)

        try:
            report("exporting", 10, f"Exporting data from {current_type.value}...")
            exported = await source.export_all()
            if not exported.success or exported.data is None:
                raise MigrationError(exported.error or "Failed to export data")
            snapshot = exported.data
            expected = len(snapshot.items.items)
            report("exporting", 30, f"Exported {expected} items")

            if not await target.is_available():
                report("importing", 40, f"Initializing {target_type.value} storage...")
                init = await target.initialize()
                if not init.success:
                    raise MigrationError(init.error or f"Failed to initialize {target_type.value}")

            report("importing", 50, f"Importing data to {target_type.value}...")
            imported = await target.import_all(snapshot)
            if not imported.success:
                raise MigrationError(imported.error or "Failed to import data")
            report("importing", 70, "Data imported successfully")

            report("validating", 80, "Validating migration...")
            verified = await target.export_all()
            if not verified.success or verified.data is None:
                raise MigrationError("Failed to verify migrated data")
            actual = len(verified.data.items.items)
            if actual != expected:
                raise MigrationError(f"Item count mismatch: expected {expected}, got {actual}")
            report("validating", 90, "Validation successful")

            # Metadata first: the pointer only moves once the switch is durable.
            self.set_metadata(
                BackendMetadata(
                    active_storage=target_type,
                    last_migration=utc_now_iso(),
                    version=STORAGE_VERSION,
                )
            )
            self._current = target
            report("complete", 100, f"Successfully migrated to {target_type.value}")
            return StorageResult.ok()
        except Exception as e:
            if not isinstance(e, MigrationError):
                logger.exception("Unexpected error migrating to %s", target_type.value)
            report("error", 0, f"Migration failed: {e}")
            return StorageResult.fail(str(e))

    # --- Maintenance ---

    async def is_relational_available(self) -> bool:
        """Whether the relational backend can be opened in this process."""
        try:
            if await self.relational.is_available():
                return True
            result = await self.relational.initialize()
            return result.success
        except Exception as e:
            logger.warning("Relational availability check failed: %s", e)
            return False

    async def get_stats(self) -> StorageResult[StorageStats]:
        """Active backend, live item count and the host store bytes it occupies."""
        try:
            provider = self.get_provider()
            items = await provider.get_items()
            count = len(items.data.items) if items.success and items.data else 0

            size = sum(len(self.kv.get_item(key) or "") for key in provider.storage_keys())

            return StorageResult.ok(
                StorageStats(type=provider.type, item_count=count, estimated_bytes=size)
            )
        except Exception as e:
            logger.warning("Collecting storage stats failed: %s", e)
            return StorageResult.fail(f"Failed to collect stats: {e}")

    async def reset(self) -> StorageResult[None]:
        """Erase both backends and return to the key-value default. Destructive."""
        try:
            errors = []
            for provider in (self.keyvalue, self.relational):
                result = await provider.clear()
                if not result.success:
                    errors.append(result.error)

            self.set_metadata(
                BackendMetadata(active_storage=StorageType.KEY_VALUE, version=STORAGE_VERSION)
            )
            result = await self._use_keyvalue()
            if not result.success:
                return result
            self._initialized = True

            if errors:
                return StorageResult.fail("; ".join(e or "unknown error" for e in errors))
            logger.info("Storage reset to key-value backend")
            return StorageResult.ok()
        except Exception as e:
            logger.exception("Storage reset failed")
            return StorageResult.fail(f"Failed to reset storage: {e}")

    async def close(self) -> None:
        """Flush and release both backends."""
        for provider in (self.relational, self.keyvalue):
            try:
                await provider.close()
            except Exception as e:
                logger.warning("Closing %s backend failed: %s", provider.type.value, e)
        self._current = None
        self._initialized = False

    # --- Helpers ---

    def _provider_for(self, storage_type: StorageType) -> StorageProvider:
        if storage_type is StorageType.RELATIONAL:
            return self.relational
        return self.keyvalue

    async def _use_keyvalue(self) -> StorageResult[None]:
        result = await self.keyvalue.initialize()
        if not result.success:
            logger.error("Key-value backend unavailable: %s", result.error)
            return result
        self._current = self.keyvalue
        return StorageResult.ok()


# --- Process-wide accessor ---

_manager: Optional[StorageManager] = None


def build_storage_manager(config=None) -> StorageManager:
    """Construct a manager over the file-backed host store named in the config."""
    from thoughtstime.app.config import load_config
    from thoughtstime.storage.kvstore import FileKeyValueStore

    config = config or load_config()
    kv = FileKeyValueStore(config.data_path, capacity=config.capacity_bytes)
    return StorageManager(kv, default_backend=config.default_backend)


def get_storage_manager() -> StorageManager:
    """Return the process's manager, building it from config on first use."""
    global _manager
    if _manager is None:
        _manager = build_storage_manager()
    return _manager


def set_storage_manager(manager: Optional[StorageManager]) -> None:
    """Install (or with None, forget) the process's manager."""
    global _manager
    _manager = manager
