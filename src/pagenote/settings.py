"""
User settings — the small record that travels in the synced scope.

Defaults are merged under whatever is stored, so a device that has
never saved settings still sees a complete record.

Note on providers: every provider except ``feishu`` receives the
encrypted document. The Feishu table receives plain note text so it
stays readable in the Feishu UI. Choosing it is an explicit opt-in
to storing notes unencrypted on that service.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .models import SyncProvider
from .storage import KeyValueStore

logger = logging.getLogger("pagenote.settings")

SETTINGS_SLOT = "_pagenote_settings"

DEFAULT_OFFSET_DOMAINS = [
    "github.com", "gitlab.com", "google.com", "youtube.com",
    "chatgpt.com", "chat.openai.com", "claude.ai", "gemini.google.com",
    "perplexity.ai", "huggingface.co", "stackoverflow.com",
    "vercel.com", "netlify.com", "notion.so", "figma.com",
    "discord.com", "x.com", "twitter.com", "reddit.com", "linkedin.com",
    "v2ex.com", "juejin.cn", "zhihu.com", "bilibili.com",
    "kimi.moonshot.cn", "doubao.com", "colab.research.google.com",
    "greasyfork.org", "codepen.io", "replit.com", "deepseek.com",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeishuConfig(_CamelModel):
    """Credentials and target table for the Feishu Bitable provider."""

    app_id: str
    app_secret: str
    app_token: str
    table_id: str


class Settings(_CamelModel):
    """User-facing settings shared by all devices."""

    position: str = "top-right"
    display_mode: str = "collapsed"
    sync_provider: SyncProvider = SyncProvider.CHROME
    github_token: Optional[str] = None
    github_gist_id: Optional[str] = None
    feishu_config: Optional[FeishuConfig] = None
    drive_enabled: bool = False
    offset_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_OFFSET_DOMAINS)
    )
    theme: Optional[str] = None


class SettingsStore:
    """Reads and writes :class:`Settings` in the synced scope.

    Args:
        synced: The cross-device scope.
    """

    def __init__(self, synced: KeyValueStore) -> None:
        self._synced = synced

    def load(self) -> Settings:
        """Return stored settings over the defaults.

        A malformed record is logged and replaced by defaults rather
        than raised, so a bad value never locks the user out.
        """
        raw = self._synced.get(SETTINGS_SLOT) or {}
        try:
            return Settings.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring invalid settings record: %s", exc)
            return Settings()

    def save(self, settings: Settings) -> None:
        self._synced.set(
            {SETTINGS_SLOT: settings.model_dump(mode="json", by_alias=True)}
        )

    def update(self, **changes: Any) -> Settings:
        """Apply field changes and persist the result.

        Args:
            **changes: Field names (snake_case) and their new values.

        Returns:
            The saved settings.
        """
        current = self.load().model_dump()
        current.update(changes)
        settings = Settings.model_validate(current)
        self.save(settings)
        return settings

    def initialize(self) -> Settings:
        """Write the default record if none exists yet."""
        if self._synced.get(SETTINGS_SLOT) is None:
            settings = Settings()
            self.save(settings)
            logger.info("Initialized default settings")
            return settings
        return self.load()
