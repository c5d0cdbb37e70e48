"""
Sync Coordinator -- orchestrates encryption, transport and merging.

This is the command center. It reads the provider from settings, picks
the backend(s), debounces change-triggered pushes and merges pulled
documents into the local store.

    data.changed  ->  debounce 5s -> encrypt -> push to provider(s)
    pull          ->  first backend with data -> decrypt -> merge -> save

Pushes never overlap: a debounce expiry that lands while a push is in
flight waits for it to finish. Merge writes do not publish
``data.changed``, so a pull never bounces back as a push.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from ..cipher import Cipher, DecryptionError
from ..config import EngineConfig
from ..events import DATA_CHANGED, QUOTA_EXCEEDED, SYNC_COMPLETE, Event, EventBus
from ..models import Document
from ..settings import SettingsStore
from ..storage import KeyValueStore
from ..store import DocumentStore
from .backends import QuotaExceeded, SyncBackend, SyncError, create_backend
from .merge import merge_documents
from .models import PULL_ORDER, SyncPhase, SyncProvider, SyncResult, SyncState
from .scheduler import Debouncer

logger = logging.getLogger("pagenote.sync.engine")

STATE_SLOT = "_pagenote_sync_state"
QUOTA_MESSAGE = (
    "Chrome sync storage is almost full. "
    "Switch to Google Drive or GitHub sync to keep syncing all notes."
)


class SyncCoordinator:
    """Drives push/pull between the document store and the backends.

    Args:
        store: The local document store.
        cipher: Cipher bound to the installation key.
        settings: Settings store (provider choice and credentials).
        synced: The synced scope, handed to the chunked backend.
        local: The local scope, where sync state is kept.
        bus: Event bus for change notifications and broadcasts.
        config: Engine tuning. Defaults to EngineConfig().
        drive_token_provider: Token source for Google Drive.
        backends: Pre-built backends by provider, mainly for tests.
    """

    def __init__(
        self,
        store: DocumentStore,
        cipher: Cipher,
        settings: SettingsStore,
        synced: KeyValueStore,
        local: KeyValueStore,
        bus: EventBus,
        config: Optional[EngineConfig] = None,
        drive_token_provider: Optional[Callable[[], Optional[str]]] = None,
        backends: Optional[dict[SyncProvider, SyncBackend]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._store = store
        self._cipher = cipher
        self._settings = settings
        self._synced = synced
        self._local = local
        self._bus = bus
        self._drive_token_provider = drive_token_provider
        self._backends: dict[SyncProvider, SyncBackend] = dict(backends or {})

        self._push_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._phase_lock = threading.Lock()
        self._pushing = 0
        self._pulling = 0
        self._quota_notified = False

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.sync_workers,
            thread_name_prefix="pagenote-sync",
        )
        self._debouncer = Debouncer(
            self.push_to_remote,
            delay=self.config.push_debounce_seconds,
            name="pagenote-push",
        )
        self._bus.subscribe(DATA_CHANGED, self._on_data_changed)

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    def backend_for(self, provider: SyncProvider) -> SyncBackend:
        """Return the (cached) backend instance for a provider."""
        backend = self._backends.get(provider)
        if backend is None:
            backend = create_backend(
                provider,
                synced=self._synced,
                settings=self._settings,
                timeout=self.config.http_timeout_seconds,
                chunk_size=self.config.chunk_size,
                chunk_quota=self.config.chunk_quota,
                drive_token_provider=self._drive_token_provider,
            )
            self._backends[provider] = backend
        return backend

    @staticmethod
    def selected_providers(provider: SyncProvider) -> list[SyncProvider]:
        """Concrete providers for a settings value, in pull priority order."""
        if provider == SyncProvider.NONE:
            return []
        if provider == SyncProvider.ALL:
            return list(PULL_ORDER)
        return [provider]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        with self._phase_lock:
            if self._pushing:
                return SyncPhase.PUSHING
            if self._pulling:
                return SyncPhase.PULLING
        if self._debouncer.pending:
            return SyncPhase.PENDING_PUSH
        return SyncPhase.IDLE

    def schedule_push(self) -> None:
        """Arm (or re-arm) the debounced push. Returns immediately."""
        self._debouncer.trigger()

    def _on_data_changed(self, event: Event) -> None:
        self.schedule_push()

    def push_async(self) -> Future:
        """Run :meth:`push_to_remote` on the sync worker pool."""
        return self._executor.submit(self.push_to_remote)

    def pull_async(self) -> Future:
        """Run :meth:`pull_from_remote` on the sync worker pool."""
        return self._executor.submit(self.pull_from_remote)

    def shutdown(self, flush: bool = False) -> None:
        """Stop the scheduler and the worker pool.

        Args:
            flush: Run a pending debounced push before stopping.
        """
        if flush:
            self._debouncer.flush()
        else:
            self._debouncer.cancel()
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push_to_remote(self) -> dict[str, bool]:
        """Push the local document to the configured provider(s).

        With ``all``, every backend is pushed in parallel and a failure
        in one does not stop the others.

        Returns:
            Dict mapping backend name to success boolean. Empty when the
            provider is ``none``.
        """
        provider = self._settings.load().sync_provider
        targets = [self.backend_for(p) for p in self.selected_providers(provider)]
        if not targets:
            logger.debug("Sync provider is 'none', skipping push")
            return {}

        with self._push_lock:
            self._enter("push")
            try:
                results = self._push_targets(targets)
            finally:
                self._leave("push")

        failed = [name for name, ok in results.items() if not ok]
        with self._state_lock:
            state = self.load_state()
            if len(failed) < len(results):
                state.last_push = datetime.now(timezone.utc)
                state.last_push_backends = [n for n, ok in results.items() if ok]
                state.push_count += 1
            state.last_error = f"Push failed: {', '.join(failed)}" if failed else None
            self._save_state(state)

        self._bus.publish(SYNC_COMPLETE, {"direction": "push", "results": results})
        return results

    def _push_targets(self, targets: list[SyncBackend]) -> dict[str, bool]:
        document = self._store.load()
        ciphertext: Optional[str] = None
        if any(b.encrypted for b in targets):
            ciphertext = self._cipher.encrypt(
                json.dumps(document.to_wire(), ensure_ascii=False)
            )

        def payload_for(backend: SyncBackend):
            # Tabular backends store readable rows, so they get the plain document.
            return ciphertext if backend.encrypted else document

        if len(targets) == 1:
            backend = targets[0]
            return {backend.name: self._push_one(backend, payload_for(backend))}

        results: dict[str, bool] = {}
        with ThreadPoolExecutor(
            max_workers=len(targets), thread_name_prefix="pagenote-push"
        ) as pool:
            futures = {
                b.name: pool.submit(self._push_one, b, payload_for(b)) for b in targets
            }
            for name, future in futures.items():
                try:
                    results[name] = future.result()
                except Exception as exc:
                    logger.error("Push to %s crashed: %s", name, exc)
                    results[name] = False
        return results

    def _push_one(self, backend: SyncBackend, payload) -> bool:
        try:
            backend.push(payload)
            logger.info("Pushed to %s", backend.name)
            return True
        except QuotaExceeded as exc:
            logger.warning("Push to %s over quota: %s", backend.name, exc)
            self._notify_quota_exceeded()
            return False
        except SyncError as exc:
            logger.error("Push to %s failed: %s", backend.name, exc)
            return False

    def _notify_quota_exceeded(self) -> None:
        with self._state_lock:
            if self._quota_notified:
                return
            self._quota_notified = True
        self._bus.publish(QUOTA_EXCEEDED, {"message": QUOTA_MESSAGE})

    def force_sync(self) -> SyncResult:
        """UI "sync now": push immediately and report the outcome."""
        self._debouncer.cancel()
        try:
            results = self.push_to_remote()
        except Exception as exc:
            logger.error("Sync push failed: %s", exc)
            return SyncResult(ok=False, error=str(exc))
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            return SyncResult(
                ok=False,
                error=f"Sync failed for: {', '.join(failed)}",
                backends=results,
            )
        return SyncResult(ok=True, backends=results)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull_from_remote(self) -> Optional[Document]:
        """Fetch the first available remote copy and merge it locally.

        Backends are tried in priority order (chrome, drive, github,
        feishu) and the first one returning a usable document wins.

        Returns:
            The merged local document, or None if nothing was pulled.
        """
        provider = self._settings.load().sync_provider
        candidates = self.selected_providers(provider)
        if not candidates:
            logger.debug("Sync provider is 'none', skipping pull")
            return None

        self._enter("pull")
        try:
            for p in candidates:
                backend = self.backend_for(p)
                remote = self._decode(backend, self._safe_pull(backend))
                if remote is None:
                    continue

                merged = self.merge_and_save(remote)
                logger.info("Merged remote document from %s", backend.name)
                with self._state_lock:
                    state = self.load_state()
                    state.last_pull = datetime.now(timezone.utc)
                    state.last_pull_backend = backend.name
                    state.pull_count += 1
                    self._save_state(state)
                self._bus.publish(
                    SYNC_COMPLETE, {"direction": "pull", "backend": backend.name}
                )
                return merged
        finally:
            self._leave("pull")

        logger.info("No remote data available from any backend")
        return None

    def _safe_pull(self, backend: SyncBackend):
        try:
            return backend.pull()
        except Exception as exc:
            logger.warning("Pull from %s failed: %s", backend.name, exc)
            return None

    def _decode(self, backend: SyncBackend, payload) -> Optional[Document]:
        if payload is None:
            return None
        if isinstance(payload, Document):
            return payload
        try:
            return Document.model_validate(json.loads(self._cipher.decrypt(payload)))
        except (DecryptionError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Remote data from %s unusable: %s", backend.name, exc)
            return None

    def merge_and_save(self, remote: Document) -> Document:
        """Merge ``remote`` into the local document and persist it.

        The write does not publish ``data.changed``.
        """

        def mutate(local: Document) -> Document:
            merged = merge_documents(remote, local)
            local.domains = merged.domains
            return local

        return self._store.apply(mutate, notify=False)

    def force_pull(self) -> SyncResult:
        """UI "pull now": pull immediately and report the outcome."""
        try:
            merged = self.pull_from_remote()
        except Exception as exc:
            logger.error("Sync pull failed: %s", exc)
            return SyncResult(ok=False, error=str(exc))
        if merged is None:
            return SyncResult(ok=True)
        source = self.load_state().last_pull_backend
        return SyncResult(ok=True, backends={source: True} if source else {})

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _enter(self, direction: str) -> None:
        with self._phase_lock:
            if direction == "push":
                self._pushing += 1
            else:
                self._pulling += 1

    def _leave(self, direction: str) -> None:
        with self._phase_lock:
            if direction == "push":
                self._pushing -= 1
            else:
                self._pulling -= 1

    def load_state(self) -> SyncState:
        """Load sync state from the local scope."""
        raw = self._local.get(STATE_SLOT)
        if raw:
            try:
                return SyncState.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _save_state(self, state: SyncState) -> None:
        self._local.set({STATE_SLOT: state.model_dump(mode="json")})

    def status(self) -> dict:
        """Get current sync status.

        Returns:
            Dict with state, provider, phase and backend availability.
        """
        provider = self._settings.load().sync_provider
        backends_status = []
        for p in self.selected_providers(provider):
            backend = self.backend_for(p)
            backends_status.append({
                "name": backend.name,
                "encrypted": backend.encrypted,
                "available": backend.available(),
            })
        return {
            "provider": provider.value,
            "phase": self.phase.value,
            "state": self.load_state().model_dump(mode="json"),
            "backends": backends_status,
        }
