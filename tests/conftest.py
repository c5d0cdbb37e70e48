"""Shared test fixtures for pagenote."""

from __future__ import annotations

from pathlib import Path

import pytest

from pagenote.cipher import Cipher
from pagenote.config import EngineConfig
from pagenote.events import EventBus
from pagenote.settings import SettingsStore
from pagenote.storage import MemoryStore
from pagenote.store import DocumentStore


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary PageNote home directory."""
    home = tmp_path / ".pagenote"
    home.mkdir()
    return home


@pytest.fixture
def local() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def synced() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def settings(synced: MemoryStore) -> SettingsStore:
    return SettingsStore(synced)


@pytest.fixture
def cipher(synced: MemoryStore) -> Cipher:
    return Cipher(synced)


@pytest.fixture
def store(local, cipher, bus, settings) -> DocumentStore:
    """A document store over in-memory scopes."""
    return DocumentStore(local, cipher, bus, settings)


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config with a short debounce so timer tests stay quick."""
    return EngineConfig(push_debounce_seconds=0.05)
