"""Tests for the host key-value stores."""

from __future__ import annotations

import json
from unittest import mock

import pytest

from thoughtstime.storage.errors import QuotaExceededError, StorageUnavailableError
from thoughtstime.storage.kvstore import FileKeyValueStore, MemoryKeyValueStore


class TestMemoryKeyValueStore:
    def test_set_get_remove(self):
        kv = MemoryKeyValueStore()
        kv.set_item("a", "1")
        assert kv.get_item("a") == "1"
        assert "a" in kv
        kv.remove_item("a")
        assert kv.get_item("a") is None
        kv.remove_item("a")  # removing twice is fine

    def test_rejects_non_string(self):
        kv = MemoryKeyValueStore()
        with pytest.raises(TypeError):
            kv.set_item("a", 1)

    def test_quota(self):
        kv = MemoryKeyValueStore(capacity=10)
        kv.set_item("k", "12345")
        with pytest.raises(QuotaExceededError):
            kv.set_item("j", "123456789")
        assert kv.get_item("j") is None
        # Overwriting counts the replaced value as freed
        kv.set_item("k", "123456789")
        assert kv.used_bytes() == 10

    def test_failed_flush_restores_previous(self):
        kv = MemoryKeyValueStore()
        kv.set_item("a", "old")
        with mock.patch.object(kv, "_flush", side_effect=StorageUnavailableError("disk gone")):
            with pytest.raises(StorageUnavailableError):
                kv.set_item("a", "new")
            with pytest.raises(StorageUnavailableError):
                kv.remove_item("a")
        assert kv.get_item("a") == "old"


class TestFileKeyValueStore:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        kv = FileKeyValueStore(str(path))
        kv.set_item("greeting", "hello")

        reopened = FileKeyValueStore(str(path))
        assert reopened.get_item("greeting") == "hello"
        assert json.loads(path.read_text()) == {"greeting": "hello"}

    def test_corrupt_file_moved_aside(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")

        kv = FileKeyValueStore(str(path))
        assert kv.keys() == []
        assert (tmp_path / "store.json.corrupt").read_text() == "{not json"

    def test_non_object_ignored(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]")
        assert FileKeyValueStore(str(path)).keys() == []

    def test_quota_applies(self, tmp_path):
        kv = FileKeyValueStore(str(tmp_path / "store.json"), capacity=8)
        with pytest.raises(QuotaExceededError):
            kv.set_item("key", "too long value")
        assert not (tmp_path / "store.json").exists()
