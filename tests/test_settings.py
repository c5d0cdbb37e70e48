"""Tests for user settings and engine configuration."""

from __future__ import annotations

from pathlib import Path

from pagenote.config import CONFIG_FILE, EngineConfig, load_config, save_config
from pagenote.models import SyncProvider
from pagenote.settings import (
    DEFAULT_OFFSET_DOMAINS,
    SETTINGS_SLOT,
    FeishuConfig,
    Settings,
    SettingsStore,
)
from pagenote.storage import MemoryStore


class TestSettingsStore:
    """Settings in the synced scope."""

    def test_defaults(self) -> None:
        s = SettingsStore(MemoryStore()).load()
        assert s.sync_provider == SyncProvider.CHROME
        assert s.position == "top-right"
        assert s.display_mode == "collapsed"
        assert s.drive_enabled is False
        assert s.offset_domains == DEFAULT_OFFSET_DOMAINS

    def test_stored_with_camel_case_keys(self) -> None:
        synced = MemoryStore()
        SettingsStore(synced).update(sync_provider=SyncProvider.GITHUB, github_token="ghp_x")
        raw = synced.get(SETTINGS_SLOT)
        assert raw["syncProvider"] == "github"
        assert raw["githubToken"] == "ghp_x"

    def test_partial_record_gets_defaults(self) -> None:
        synced = MemoryStore()
        synced.set({SETTINGS_SLOT: {"syncProvider": "drive"}})
        s = SettingsStore(synced).load()
        assert s.sync_provider == SyncProvider.DRIVE
        assert s.position == "top-right"

    def test_invalid_record_falls_back(self) -> None:
        synced = MemoryStore()
        synced.set({SETTINGS_SLOT: {"syncProvider": "carrier-pigeon"}})
        assert SettingsStore(synced).load() == Settings()

    def test_feishu_config_roundtrip(self) -> None:
        store = SettingsStore(MemoryStore())
        store.update(
            feishu_config=FeishuConfig(
                app_id="cli_a", app_secret="s", app_token="bas", table_id="tbl"
            )
        )
        assert store.load().feishu_config.table_id == "tbl"

    def test_initialize_only_once(self) -> None:
        synced = MemoryStore()
        store = SettingsStore(synced)
        store.initialize()
        store.update(theme="dark")
        store.initialize()
        assert store.load().theme == "dark"


class TestEngineConfig:
    """YAML engine config."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_config(tmp_path) == EngineConfig()

    def test_save_and_load(self, tmp_path: Path) -> None:
        save_config(tmp_path, EngineConfig(push_debounce_seconds=1.5, log_level="INFO"))
        config = load_config(tmp_path)
        assert config.push_debounce_seconds == 1.5
        assert config.log_level == "INFO"

    def test_malformed_file_gives_defaults(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE).write_text("chunk_size: [oops", encoding="utf-8")
        assert load_config(tmp_path) == EngineConfig()

    def test_invalid_values_give_defaults(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE).write_text("chunk_size: -3\n", encoding="utf-8")
        assert load_config(tmp_path) == EngineConfig()
