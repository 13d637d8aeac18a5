"""Tests for the boot-time StorageInitializer."""

from __future__ import annotations

import json
from unittest import mock

import pytest

from thoughtstime.app.stores import create_items_store, create_settings_store
from thoughtstime.storage.bridge import ItemsStorageAdapter, SettingsStorageAdapter, SyncStorageAdapter
from thoughtstime.storage.initializer import StorageInitializer
from thoughtstime.storage.kvstore import MemoryKeyValueStore
from thoughtstime.storage.manager import StorageManager
from thoughtstime.storage.models import (
    ITEMS_KEY,
    ItemsState,
    Settings,
    StorageResult,
    StorageSnapshot,
    StorageType,
)


def make_snapshot(n: int = 2, theme: str = "light") -> StorageSnapshot:
    items = ItemsState.from_dict(
        {"items": [
            {"id": f"t{i}", "type": "todo", "createdAt": f"2024-07-{i + 1:02d}T10:00:00+00:00"}
            for i in range(n)
        ]}
    )
    return StorageSnapshot.create(items, Settings(theme=theme))


async def prepare_relational(kv) -> None:
    """Leave ``kv`` holding relational data and metadata pointing at it."""
    manager = StorageManager(kv)
    await manager.initialize()
    await manager.get_provider().import_all(make_snapshot())
    assert (await manager.migrate(StorageType.RELATIONAL)).success
    await manager.close()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


class TestStart:
    @pytest.mark.asyncio
    async def test_keyvalue_start_leaves_stores_alone(self, kv):
        manager = StorageManager(kv)
        items = create_items_store(SyncStorageAdapter(kv))
        settings = create_settings_store(SyncStorageAdapter(kv))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()
            assert init.ready
            assert init.error is None
            assert not items.hydrated
        finally:
            init.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_relational_start_mirrors_and_rehydrates(self, kv):
        await prepare_relational(kv)
        kv.remove_item(ITEMS_KEY)

        manager = StorageManager(kv)
        items = create_items_store(SyncStorageAdapter(kv))
        settings = create_settings_store(SyncStorageAdapter(kv))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()

            assert [item["id"] for item in items.state["items"]] == ["t0", "t1"]
            assert settings.state["theme"] == "light"
            mirrored = json.loads(kv.get_item(ITEMS_KEY))
            assert mirrored["version"] == 0
            assert len(mirrored["state"]["items"]) == 2
        finally:
            init.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_write_through_while_relational(self, kv):
        await prepare_relational(kv)
        manager = StorageManager(kv)
        items = create_items_store(SyncStorageAdapter(kv))
        settings = create_settings_store(SyncStorageAdapter(kv))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()
            added = {"id": "t9", "type": "todo", "createdAt": "2024-07-09T10:00:00+00:00"}
            await items.set_state(items=items.state["items"] + [added])
            await settings.set_state(timeFormat="24h")

            stored = await manager.get_provider().get_items()
            assert stored.data.ids == ["t0", "t1", "t9"]
            assert (await manager.get_provider().get_settings()).data.time_format == "24h"
        finally:
            init.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_stop_ends_write_through(self, kv):
        await prepare_relational(kv)
        manager = StorageManager(kv)
        items = create_items_store(SyncStorageAdapter(kv))
        settings = create_settings_store(SyncStorageAdapter(kv))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()
            init.stop()
            await items.set_state(items=[])
            assert (await manager.get_provider().get_items()).data.ids == ["t0", "t1"]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_failed_initialize_is_recorded(self, kv):
        manager = StorageManager(kv)
        items = create_items_store(SyncStorageAdapter(kv))
        settings = create_settings_store(SyncStorageAdapter(kv))
        init = StorageInitializer(manager, items, settings)
        failing = mock.AsyncMock(return_value=StorageResult.fail("host store gone"))
        with mock.patch.object(manager, "initialize", failing):
            await init.start()
        try:
            assert init.ready
            assert init.error == "host store gone"
        finally:
            init.stop()
            await manager.close()


class TestMigrate:
    @pytest.mark.asyncio
    async def test_migrate_rehydrates_stores(self, kv):
        manager = StorageManager(kv)
        items = create_items_store(ItemsStorageAdapter(manager))
        settings = create_settings_store(SettingsStorageAdapter(manager))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()
            await manager.get_provider().import_all(make_snapshot(3, theme="dark"))

            phases = []
            result = await init.migrate("relational", on_progress=lambda p: phases.append(p.phase))

            assert result.success
            assert phases[-1] == "complete"
            assert [item["id"] for item in items.state["items"]] == ["t0", "t1", "t2"]
            assert settings.state["theme"] == "dark"
        finally:
            init.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_failed_migration_keeps_stores(self, kv):
        manager = StorageManager(kv)
        items = create_items_store(ItemsStorageAdapter(manager))
        settings = create_settings_store(SettingsStorageAdapter(manager))
        init = StorageInitializer(manager, items, settings)
        try:
            await init.start()
            result = await init.migrate("nowhere")
            assert not result.success
            assert not items.hydrated
        finally:
            init.stop()
            await manager.close()
