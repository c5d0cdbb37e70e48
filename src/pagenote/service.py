"""
PageNote service — every core service, built once and wired together.

UI surfaces hold one PageNoteService and talk to its members, or send
it the same messages the browser front end sends:

    DATA_CHANGED   schedule a debounced push
    FORCE_SYNC     push now, reply {"ok": bool, "error": str | None}
    PULL_SYNC      pull now, reply {"ok": bool, "error": str | None}
    EXPORT_DATA    reply {"ok": True, "data": markdown}

Usage:
    with PageNoteService(Path("~/.pagenote")) as svc:
        svc.store.add_note("example.com", "/a", "buy milk")
        svc.coordinator.force_sync()
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Optional

from .cipher import Cipher, DecryptionError
from .config import EngineConfig, load_config
from .events import EventBus
from .export import EXPORT_FAILED, NO_DATA, render_markdown
from .settings import SettingsStore
from .storage import KeyValueStore, open_local_store, open_synced_store
from .store import DocumentStore
from .sync.engine import SyncCoordinator

logger = logging.getLogger("pagenote.service")


class PageNoteService:
    """Owns the stores, cipher, event bus and sync coordinator.

    Args:
        home: PageNote home directory.
        config: Engine tuning; read from ``home/config.yaml`` if omitted.
        drive_token_provider: Token source for Google Drive.
        local: Override for the device-only scope.
        synced: Override for the synced scope.
    """

    def __init__(
        self,
        home: Path,
        config: Optional[EngineConfig] = None,
        drive_token_provider: Optional[Callable[[], Optional[str]]] = None,
        local: Optional[KeyValueStore] = None,
        synced: Optional[KeyValueStore] = None,
    ) -> None:
        self.home = home.expanduser()
        self.config = config or load_config(self.home)
        self.local = local if local is not None else open_local_store(self.home)
        self.synced = synced if synced is not None else open_synced_store(self.home)

        self.bus = EventBus()
        self.settings = SettingsStore(self.synced)
        self.cipher = Cipher(self.synced)
        self.store = DocumentStore(self.local, self.cipher, self.bus, self.settings)
        self.coordinator = SyncCoordinator(
            self.store,
            self.cipher,
            self.settings,
            synced=self.synced,
            local=self.local,
            bus=self.bus,
            config=self.config,
            drive_token_provider=drive_token_provider,
        )

    def __enter__(self) -> "PageNoteService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def initialize(self) -> None:
        """First-run setup: default settings and the encryption key."""
        self.settings.initialize()
        self.cipher.get_or_create_key()

    def on_startup(self) -> Future:
        """Pull the latest remote copy in the background."""
        return self.coordinator.pull_async()

    def export_markdown(self) -> str:
        """Decrypt the document and render it as Markdown."""
        if not self.store.has_data():
            return NO_DATA
        try:
            document = self.store.load(strict=True)
        except DecryptionError as exc:
            logger.warning("Export could not decrypt notes: %s", exc)
            return EXPORT_FAILED
        return render_markdown(document)

    def handle_message(self, message: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Route a front-end message.

        Returns:
            A reply dict for request-style messages, None otherwise.
        """
        kind = message.get("type")
        if kind == "DATA_CHANGED":
            self.coordinator.schedule_push()
            return None
        if kind == "FORCE_SYNC":
            result = self.coordinator.force_sync()
            return {"ok": result.ok, "error": result.error}
        if kind == "PULL_SYNC":
            result = self.coordinator.force_pull()
            return {"ok": result.ok, "error": result.error}
        if kind == "EXPORT_DATA":
            return {"ok": True, "data": self.export_markdown()}
        logger.debug("Ignoring unknown message type: %s", kind)
        return None

    def close(self, flush: bool = True) -> None:
        """Stop background work, pushing any pending change first."""
        self.coordinator.shutdown(flush=flush)
