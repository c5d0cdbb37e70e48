"""Tests for the key/value persistence scopes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pagenote.storage import (
    SYNC_QUOTA_BYTES_PER_ITEM,
    JsonFileStore,
    MemoryStore,
    StorageQuotaError,
    open_synced_store,
)


class TestJsonFileStore:
    """File-backed scope."""

    def test_missing_file_reads_empty(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "scope.json")
        assert store.get_all() == {}
        assert store.get("x", "default") == "default"

    def test_set_and_get(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "scope.json")
        store.set({"a": 1, "b": {"c": [1, 2]}})
        assert store.get("a") == 1
        assert store.get_many(["b", "missing"]) == {"b": {"c": [1, 2]}}

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "scope.json"
        JsonFileStore(path).set({"k": "v"})
        assert JsonFileStore(path).get("k") == "v"
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": "v"}

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "scope.json")
        store.set({"a": 1})
        store.set({"b": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["scope.json"]

    def test_corrupt_file_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "scope.json"
        path.write_text("{not json", encoding="utf-8")
        assert JsonFileStore(path).get_all() == {}

    def test_remove(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "scope.json")
        store.set({"a": 1, "b": 2})
        store.remove(["a", "zzz"])
        assert store.get_all() == {"b": 2}


class TestScopeOperations:
    """Operations shared by every scope."""

    def test_replace_prefix(self) -> None:
        store = MemoryStore()
        store.set({"p_0": "x", "p_1": "y", "p_meta": 2, "other": True})
        store.replace_prefix("p_", {"p_0": "z", "p_meta": 1})
        assert store.get_all() == {"p_0": "z", "p_meta": 1, "other": True}

    def test_set_if_absent_keeps_existing(self) -> None:
        store = MemoryStore()
        assert store.set_if_absent("k", "first") == "first"
        assert store.set_if_absent("k", "second") == "first"
        assert store.get("k") == "first"

    def test_memory_store_isolates_values(self) -> None:
        """Mutating a read value does not change the stored one."""
        store = MemoryStore()
        store.set({"k": {"n": 1}})
        value = store.get("k")
        value["n"] = 99
        assert store.get("k") == {"n": 1}


class TestQuota:
    """Size limits on the synced scope."""

    def test_item_limit(self) -> None:
        store = MemoryStore(max_item_bytes=100)
        with pytest.raises(StorageQuotaError):
            store.set({"big": "x" * 200})
        assert store.get_all() == {}

    def test_total_limit_is_all_or_nothing(self) -> None:
        store = MemoryStore(max_total_bytes=300)
        store.set({"a": "x" * 100})
        with pytest.raises(StorageQuotaError):
            store.set({"b": "y" * 100, "c": "z" * 100})
        assert store.get_all() == {"a": "x" * 100}

    def test_synced_store_limits(self, tmp_path: Path) -> None:
        store = open_synced_store(tmp_path)
        store.set({"ok": "x" * 7000})
        with pytest.raises(StorageQuotaError):
            store.set({"too_big": "x" * SYNC_QUOTA_BYTES_PER_ITEM})

    def test_bytes_in_use(self) -> None:
        store = MemoryStore()
        store.set({"ab": "cd"})
        # key (2) + JSON string with quotes (4)
        assert store.bytes_in_use() == 6
