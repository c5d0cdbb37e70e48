"""
Key/value persistence scopes.

PageNote keeps two scopes on disk:

    ~/.pagenote/
    ├── local.json     # Device-only scope: the encrypted document, sync state
    └── synced.json    # Small cross-device scope: settings, key, sync chunks

Each scope is a flat JSON object. Every write replaces the whole file
through a temp file and ``os.replace`` so a crash never leaves a
half-written scope behind. The synced scope mimics a quota-limited
sync area and refuses writes that would exceed its item or total limits.

Usage:
    store = JsonFileStore(home / "local.json")
    store.set({"_pagenote_data": blob})
    blob = store.get("_pagenote_data")
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger("pagenote.storage")

SYNC_QUOTA_BYTES = 102_400
SYNC_QUOTA_BYTES_PER_ITEM = 8_192


class StorageQuotaError(Exception):
    """Raised when a write would exceed the scope's size limits."""


def _item_size(key: str, value: Any) -> int:
    """Size of one item the way sync quotas count it (key + JSON value)."""
    return len(key.encode("utf-8")) + len(
        json.dumps(value, ensure_ascii=False).encode("utf-8")
    )


class KeyValueStore(ABC):
    """A persistence scope holding JSON-serialisable values by key.

    Subclasses supply ``_read_all`` and ``_write_all``. Quota checks,
    locking and the public operations live here so every scope behaves
    the same way.

    Args:
        max_item_bytes: Per-item limit, or None for unlimited.
        max_total_bytes: Whole-scope limit, or None for unlimited.
    """

    def __init__(
        self,
        max_item_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
    ) -> None:
        self._max_item = max_item_bytes
        self._max_total = max_total_bytes
        self._lock = threading.RLock()

    @abstractmethod
    def _read_all(self) -> dict[str, Any]:
        """Return a fresh copy of every stored item."""

    @abstractmethod
    def _write_all(self, items: dict[str, Any]) -> None:
        """Replace the whole scope with ``items``."""

    def get(self, key: str, default: Any = None) -> Any:
        """Read one item."""
        with self._lock:
            return self._read_all().get(key, default)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Read several items; missing keys are left out."""
        with self._lock:
            items = self._read_all()
            return {k: items[k] for k in keys if k in items}

    def get_all(self) -> dict[str, Any]:
        """Read the whole scope."""
        with self._lock:
            return self._read_all()

    def set(self, values: dict[str, Any]) -> None:
        """Write several items in one all-or-nothing update.

        Raises:
            StorageQuotaError: If the update would break a size limit.
                Nothing is written in that case.
        """
        with self._lock:
            items = self._read_all()
            items.update(values)
            self._check_quota(values, items)
            self._write_all(items)

    def remove(self, keys: Iterable[str]) -> None:
        """Delete items; unknown keys are ignored."""
        with self._lock:
            items = self._read_all()
            dropped = [k for k in keys if k in items]
            if not dropped:
                return
            for k in dropped:
                del items[k]
            self._write_all(items)

    def replace_prefix(self, prefix: str, values: dict[str, Any]) -> None:
        """Drop every key starting with ``prefix`` and write ``values``.

        Both halves land in a single write, so readers never observe
        the old and new key sets mixed together.
        """
        with self._lock:
            items = {
                k: v for k, v in self._read_all().items()
                if not k.startswith(prefix)
            }
            items.update(values)
            self._check_quota(values, items)
            self._write_all(items)

    def set_if_absent(self, key: str, value: Any) -> Any:
        """Store ``value`` unless ``key`` already holds something.

        Returns:
            The value that ends up stored under ``key``.
        """
        with self._lock:
            items = self._read_all()
            existing = items.get(key)
            if existing is not None:
                return existing
            items[key] = value
            self._check_quota({key: value}, items)
            self._write_all(items)
            return value

    def bytes_in_use(self) -> int:
        """Total size of the scope as counted for quotas."""
        with self._lock:
            return sum(_item_size(k, v) for k, v in self._read_all().items())

    def _check_quota(self, changed: dict[str, Any], items: dict[str, Any]) -> None:
        if self._max_item is not None:
            for key, value in changed.items():
                size = _item_size(key, value)
                if size > self._max_item:
                    raise StorageQuotaError(
                        f"Item '{key}' is {size} bytes "
                        f"(limit {self._max_item})"
                    )
        if self._max_total is not None:
            total = sum(_item_size(k, v) for k, v in items.items())
            if total > self._max_total:
                raise StorageQuotaError(
                    f"Scope would hold {total} bytes (limit {self._max_total})"
                )


class JsonFileStore(KeyValueStore):
    """A scope backed by one JSON file.

    Args:
        path: File holding the scope. Created on first write.
        max_item_bytes: Per-item limit, or None for unlimited.
        max_total_bytes: Whole-scope limit, or None for unlimited.
    """

    def __init__(
        self,
        path: Path,
        max_item_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(max_item_bytes, max_total_bytes)
        self.path = path.expanduser()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable store %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store %s does not hold an object, ignoring", self.path)
            return {}
        return data

    def _write_all(self, items: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(items, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


class MemoryStore(KeyValueStore):
    """An in-process scope with the same contract as :class:`JsonFileStore`."""

    def __init__(
        self,
        max_item_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(max_item_bytes, max_total_bytes)
        self._items: dict[str, Any] = {}

    def _read_all(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._items))

    def _write_all(self, items: dict[str, Any]) -> None:
        self._items = json.loads(json.dumps(items))


def open_local_store(home: Path) -> JsonFileStore:
    """Open the device-only scope under ``home``."""
    return JsonFileStore(home / "local.json")


def open_synced_store(home: Path) -> JsonFileStore:
    """Open the quota-limited cross-device scope under ``home``."""
    return JsonFileStore(
        home / "synced.json",
        max_item_bytes=SYNC_QUOTA_BYTES_PER_ITEM,
        max_total_bytes=SYNC_QUOTA_BYTES,
    )
