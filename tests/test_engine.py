"""Tests for the sync coordinator: push, pull, merge and scheduling."""

from __future__ import annotations

import json
import threading
import time
from typing import Optional

import pytest

from pagenote.cipher import Cipher
from pagenote.config import EngineConfig
from pagenote.events import DATA_CHANGED, QUOTA_EXCEEDED, SYNC_COMPLETE, EventBus
from pagenote.models import Document, Note
from pagenote.settings import SettingsStore
from pagenote.storage import MemoryStore
from pagenote.store import DocumentStore
from pagenote.sync.backends import (
    ChromeSyncBackend,
    Payload,
    QuotaExceeded,
    SyncBackend,
    TransportError,
)
from pagenote.sync.engine import QUOTA_MESSAGE, SyncCoordinator
from pagenote.sync.models import SyncPhase, SyncProvider


class FakeBackend(SyncBackend):
    """In-memory backend that records pushes."""

    def __init__(
        self,
        name: str,
        encrypted: bool = True,
        payload: Optional[Payload] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self._name = name
        self.encrypted = encrypted
        self.payload = payload
        self.error = error
        self.pushed: list[Payload] = []
        self.pulls = 0
        self.pushed_event = threading.Event()

    @property
    def name(self) -> str:
        return self._name

    def push(self, payload: Payload) -> None:
        if self.error is not None:
            raise self.error
        self.pushed.append(payload)
        self.payload = payload
        self.pushed_event.set()

    def pull(self) -> Optional[Payload]:
        self.pulls += 1
        return self.payload

    def available(self) -> bool:
        return True


class BlockingBackend(FakeBackend):
    """Backend whose push holds until released, tracking overlap."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.started = threading.Event()
        self.release = threading.Event()
        self._count_lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def push(self, payload: Payload) -> None:
        with self._count_lock:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        self.release.wait(5)
        with self._count_lock:
            self.active -= 1
        super().push(payload)


def _fakes(**overrides: FakeBackend) -> dict[SyncProvider, SyncBackend]:
    backends: dict[SyncProvider, SyncBackend] = {
        SyncProvider.CHROME: FakeBackend("chrome"),
        SyncProvider.DRIVE: FakeBackend("drive"),
        SyncProvider.GITHUB: FakeBackend("github"),
        SyncProvider.FEISHU: FakeBackend("feishu", encrypted=False),
    }
    for key, backend in overrides.items():
        backends[SyncProvider(key)] = backend
    return backends


@pytest.fixture
def make_coordinator(store, cipher, settings, synced, local, bus):
    """Build coordinators over the shared fixtures and shut them down after.

    The default debounce is long so only explicit pushes run.
    """
    created: list[SyncCoordinator] = []

    def factory(backends=None, config: Optional[EngineConfig] = None) -> SyncCoordinator:
        coordinator = SyncCoordinator(
            store, cipher, settings,
            synced=synced, local=local, bus=bus,
            config=config or EngineConfig(push_debounce_seconds=30),
            backends=backends,
        )
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.shutdown()


class Device:
    """One installation sharing a synced scope with its peers."""

    def __init__(self, synced: MemoryStore, config: EngineConfig) -> None:
        self.local = MemoryStore()
        self.bus = EventBus()
        self.settings = SettingsStore(synced)
        self.cipher = Cipher(synced)
        self.store = DocumentStore(self.local, self.cipher, self.bus, self.settings)
        self.coordinator = SyncCoordinator(
            self.store, self.cipher, self.settings,
            synced=synced, local=self.local, bus=self.bus, config=config,
        )


class TestPush:
    """Outbound sync."""

    def test_push_to_chunked_store(self, make_coordinator, store, synced) -> None:
        coordinator = make_coordinator()
        store.add_note("a.com", "/", "hello")

        assert coordinator.push_to_remote() == {"chrome": True}
        backend = coordinator.backend_for(SyncProvider.CHROME)
        assert isinstance(backend, ChromeSyncBackend)
        assert backend.get_meta().chunks >= 1
        assert "hello" not in json.dumps(synced.get_all())

    def test_push_encrypts_document(self, make_coordinator, store, cipher) -> None:
        backends = _fakes()
        coordinator = make_coordinator(backends)
        store.add_note("a.com", "/", "secret")
        coordinator.push_to_remote()

        blob = backends[SyncProvider.CHROME].pushed[0]
        assert isinstance(blob, str)
        assert "secret" not in blob
        decoded = Document.model_validate(json.loads(cipher.decrypt(blob)))
        assert decoded.page("a.com", "/").notes[0].text == "secret"

    def test_none_provider_is_noop(self, make_coordinator, settings, store) -> None:
        backends = _fakes()
        coordinator = make_coordinator(backends)
        settings.update(sync_provider=SyncProvider.NONE)
        store.add_note("a.com", "/", "x")

        assert coordinator.push_to_remote() == {}
        assert coordinator.pull_from_remote() is None
        assert all(not b.pushed and b.pulls == 0 for b in backends.values())

    def test_all_isolates_failures(self, make_coordinator, settings, store) -> None:
        backends = _fakes(
            drive=FakeBackend("drive", error=TransportError("offline")),
            github=FakeBackend("github", error=RuntimeError("bug")),
        )
        coordinator = make_coordinator(backends)
        settings.update(sync_provider=SyncProvider.ALL)
        store.add_note("a.com", "/", "x")

        results = coordinator.push_to_remote()

        assert results == {"chrome": True, "drive": False, "github": False, "feishu": True}
        assert isinstance(backends[SyncProvider.CHROME].pushed[0], str)
        assert isinstance(backends[SyncProvider.FEISHU].pushed[0], Document)

    def test_quota_notified_once(self, make_coordinator, store, bus) -> None:
        backends = _fakes(chrome=FakeBackend("chrome", error=QuotaExceeded("full")))
        coordinator = make_coordinator(backends)
        warnings = []
        bus.subscribe(QUOTA_EXCEEDED, warnings.append)
        store.add_note("a.com", "/", "x")

        assert coordinator.push_to_remote() == {"chrome": False}
        assert coordinator.push_to_remote() == {"chrome": False}
        assert len(warnings) == 1
        assert warnings[0].payload["message"] == QUOTA_MESSAGE

    def test_state_recorded(self, make_coordinator, store) -> None:
        coordinator = make_coordinator(_fakes())
        store.add_note("a.com", "/", "x")
        coordinator.push_to_remote()

        state = coordinator.load_state()
        assert state.push_count == 1
        assert state.last_push is not None
        assert state.last_push_backends == ["chrome"]
        assert state.last_error is None

    def test_sync_complete_published(self, make_coordinator, bus) -> None:
        coordinator = make_coordinator(_fakes())
        events = []
        bus.subscribe(SYNC_COMPLETE, events.append)
        coordinator.push_to_remote()
        assert events[0].payload == {"direction": "push", "results": {"chrome": True}}


class TestForceActions:
    """UI-triggered push and pull results."""

    def test_force_sync_ok(self, make_coordinator) -> None:
        result = make_coordinator(_fakes()).force_sync()
        assert result.ok and result.error is None
        assert result.backends == {"chrome": True}

    def test_force_sync_failure(self, make_coordinator) -> None:
        backends = _fakes(chrome=FakeBackend("chrome", error=TransportError("x")))
        result = make_coordinator(backends).force_sync()
        assert not result.ok
        assert "chrome" in result.error

    def test_force_sync_cancels_pending(self, make_coordinator, store) -> None:
        backends = _fakes()
        coordinator = make_coordinator(backends, EngineConfig(push_debounce_seconds=0.2))
        store.add_note("a.com", "/", "x")
        assert coordinator.phase == SyncPhase.PENDING_PUSH

        coordinator.force_sync()
        time.sleep(0.4)
        assert len(backends[SyncProvider.CHROME].pushed) == 1

    def test_force_pull_nothing_remote(self, make_coordinator) -> None:
        result = make_coordinator(_fakes()).force_pull()
        assert result.ok
        assert result.backends == {}

    def test_force_pull_reports_source(self, make_coordinator, cipher) -> None:
        remote = Document()
        remote.ensure_page("a.com", "/").notes.append(Note(id="n1", text="hi"))
        blob = cipher.encrypt(json.dumps(remote.to_wire()))
        result = make_coordinator(_fakes(chrome=FakeBackend("chrome", payload=blob))).force_pull()
        assert result.ok
        assert result.backends == {"chrome": True}


class TestPull:
    """Inbound sync and merge."""

    def _blob(self, cipher: Cipher, text: str, note_id: str = "r1", updated: int = 1) -> str:
        doc = Document()
        doc.ensure_page("a.com", "/").notes.append(
            Note(id=note_id, text=text, created_at=1, updated_at=updated)
        )
        return cipher.encrypt(json.dumps(doc.to_wire()))

    def test_pull_merges(self, make_coordinator, store, cipher) -> None:
        local_note = store.add_note("a.com", "/", "local")
        coordinator = make_coordinator(
            _fakes(chrome=FakeBackend("chrome", payload=self._blob(cipher, "remote")))
        )

        merged = coordinator.pull_from_remote()

        assert merged is not None
        texts = {n.text for n in store.list_notes("a.com", "/")}
        assert texts == {"local", "remote"}
        assert store.load().page("a.com", "/").find(local_note.id).text == "local"

    def test_pull_does_not_schedule_push(self, make_coordinator, store, cipher, bus) -> None:
        backends = _fakes(chrome=FakeBackend("chrome", payload=self._blob(cipher, "r")))
        coordinator = make_coordinator(backends)
        changes = []
        bus.subscribe(DATA_CHANGED, changes.append)

        coordinator.pull_from_remote()

        assert changes == []
        assert coordinator.phase == SyncPhase.IDLE
        assert backends[SyncProvider.CHROME].pushed == []

    def test_pull_order_skips_unusable(self, make_coordinator, settings, cipher) -> None:
        backends = _fakes(
            chrome=FakeBackend("chrome", payload=None),
            drive=FakeBackend("drive", payload=Cipher(MemoryStore()).encrypt("{}")),
            github=FakeBackend("github", payload=self._blob(cipher, "from gist")),
            feishu=FakeBackend("feishu", encrypted=False, payload=Document()),
        )
        coordinator = make_coordinator(backends)
        settings.update(sync_provider=SyncProvider.ALL)

        merged = coordinator.pull_from_remote()

        assert merged.page("a.com", "/").notes[0].text == "from gist"
        assert backends[SyncProvider.FEISHU].pulls == 0
        assert coordinator.load_state().last_pull_backend == "github"

    def test_pull_survives_backend_crash(self, make_coordinator, settings) -> None:
        class Broken(FakeBackend):
            def pull(self):
                raise RuntimeError("boom")

        backends = _fakes(chrome=Broken("chrome"), drive=FakeBackend("drive"))
        coordinator = make_coordinator(backends)
        settings.update(sync_provider=SyncProvider.ALL)
        assert coordinator.pull_from_remote() is None

    def test_plain_document_accepted(self, make_coordinator, settings, store) -> None:
        remote = Document()
        remote.ensure_page("b.com", "/t").notes.append(Note(id="f1", text="table row"))
        backends = _fakes(feishu=FakeBackend("feishu", encrypted=False, payload=remote))
        coordinator = make_coordinator(backends)
        settings.update(sync_provider=SyncProvider.FEISHU)

        coordinator.pull_from_remote()
        assert store.list_notes("b.com", "/t")[0].text == "table row"

    def test_newer_remote_edit_wins(self, make_coordinator, store, cipher) -> None:
        note = store.add_note("a.com", "/", "old")
        blob = self._blob(cipher, "new", note_id=note.id, updated=note.updated_at + 1000)
        make_coordinator(_fakes(chrome=FakeBackend("chrome", payload=blob))).pull_from_remote()
        assert store.list_notes("a.com", "/")[0].text == "new"


class TestScheduling:
    """Debounced pushes driven by data changes."""

    def test_burst_collapses_to_one_push(self, make_coordinator, store, fast_config) -> None:
        backends = _fakes()
        make_coordinator(backends, fast_config)
        for i in range(5):
            store.add_note("a.com", "/", f"n{i}")

        chrome = backends[SyncProvider.CHROME]
        assert chrome.pushed_event.wait(2.0)
        time.sleep(0.2)
        assert len(chrome.pushed) == 1

    def test_debounced_push_waits_for_inflight_push(
        self, make_coordinator, store, fast_config
    ) -> None:
        blocking = BlockingBackend("chrome")
        coordinator = make_coordinator(_fakes(chrome=blocking), fast_config)

        first = coordinator.push_async()
        assert blocking.started.wait(2.0)
        store.add_note("a.com", "/", "changed mid-push")
        time.sleep(0.3)

        assert blocking.calls == 1
        assert coordinator.phase == SyncPhase.PUSHING

        blocking.release.set()
        assert first.result(timeout=5) == {"chrome": True}
        deadline = time.monotonic() + 3
        while len(blocking.pushed) < 2 and time.monotonic() < deadline:
            time.sleep(0.02)

        assert len(blocking.pushed) == 2
        assert blocking.max_active == 1

    def test_shutdown_flushes_pending(self, make_coordinator, store) -> None:
        backends = _fakes()
        coordinator = make_coordinator(backends, EngineConfig(push_debounce_seconds=30))
        store.add_note("a.com", "/", "x")
        coordinator.shutdown(flush=True)
        assert len(backends[SyncProvider.CHROME].pushed) == 1

    def test_shutdown_without_flush_drops_pending(self, make_coordinator, store) -> None:
        backends = _fakes()
        coordinator = make_coordinator(backends, EngineConfig(push_debounce_seconds=30))
        store.add_note("a.com", "/", "x")
        coordinator.shutdown()
        assert backends[SyncProvider.CHROME].pushed == []

    def test_async_helpers(self, make_coordinator) -> None:
        coordinator = make_coordinator(_fakes())
        assert coordinator.push_async().result(timeout=5) == {"chrome": True}
        assert coordinator.pull_async().result(timeout=5) is not None

    def test_status(self, make_coordinator, settings) -> None:
        coordinator = make_coordinator(_fakes())
        settings.update(sync_provider=SyncProvider.ALL)
        info = coordinator.status()
        assert info["provider"] == "all"
        assert info["phase"] == "idle"
        assert [b["name"] for b in info["backends"]] == ["chrome", "drive", "github", "feishu"]
        assert [b["encrypted"] for b in info["backends"]] == [True, True, True, False]


class TestTwoDevices:
    """End-to-end propagation through the shared synced scope."""

    def test_add_edit_delete_propagate(self, fast_config: EngineConfig) -> None:
        synced = MemoryStore()
        a = Device(synced, fast_config)
        b = Device(synced, fast_config)
        try:
            note = a.store.add_note("example.com", "/a", "buy milk")
            assert a.coordinator.force_sync().ok

            b.coordinator.pull_from_remote()
            assert [n.text for n in b.store.list_notes("example.com", "/a")] == ["buy milk"]

            time.sleep(0.005)
            b.store.update_note("example.com", "/a", note.id, "buy oat milk")
            assert b.coordinator.force_sync().ok
            a.coordinator.pull_from_remote()
            assert a.store.list_notes("example.com", "/a")[0].text == "buy oat milk"

            time.sleep(0.005)
            a.store.soft_delete_note("example.com", "/a", note.id)
            assert a.coordinator.force_sync().ok
            b.coordinator.pull_from_remote()
            assert b.store.list_notes("example.com", "/a") == []
        finally:
            a.coordinator.shutdown()
            b.coordinator.shutdown()
