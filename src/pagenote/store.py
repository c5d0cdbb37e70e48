"""
Document store — the canonical note tree on this device.

The document lives in the local scope as one encrypted blob. Every
operation loads the whole blob, decrypts it, works on the in-memory
tree, then encrypts and writes the whole thing back. A re-entrant lock
makes each load -> mutate -> save cycle atomic within the process.

Reads never fail: a missing or undecryptable blob reads as an empty
document so the notes UI stays usable.

Usage:
    store = DocumentStore(local, cipher, bus)
    note = store.add_note("example.com", "/a", "buy milk")
    store.update_note("example.com", "/a", note.id, "buy oat milk")
    store.soft_delete_note("example.com", "/a", note.id)
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import threading
import time
from typing import Callable, Optional, TypeVar
from urllib.parse import urlsplit

from pydantic import ValidationError

from .cipher import Cipher, DecryptionError
from .events import DATA_CHANGED, EventBus
from .models import Document, DomainRecord, DomainSummary, Note, PageSummary, Position
from .settings import SettingsStore
from .storage import KeyValueStore

logger = logging.getLogger("pagenote.store")

DATA_SLOT = "_pagenote_data"
DEFAULT_THEME = "sticky"
ID_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
ID_LENGTH = 8

T = TypeVar("T")


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_note_id(taken: Optional[set[str]] = None) -> str:
    """Random 8-character id, avoiding any id in ``taken``."""
    taken = taken or set()
    while True:
        candidate = "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))
        if candidate not in taken:
            return candidate


def get_domain(url: str) -> str:
    """Hostname of a URL, or ``"unknown"`` if it has none."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    return host or "unknown"


def get_path(url: str) -> str:
    """Path of a URL without query or fragment, ``"/"`` if it has none."""
    try:
        path = urlsplit(url).path
    except ValueError:
        path = ""
    return path or "/"


def _touch(note: Note) -> None:
    """Advance ``updated_at`` so it strictly increases, even within one ms."""
    note.updated_at = max(now_ms(), note.updated_at + 1)


class DocumentStore:
    """Encrypted, lock-serialised access to the note document.

    Args:
        local: Device-only scope that holds the encrypted blob.
        cipher: Cipher bound to the installation key.
        bus: Event bus; ``data.changed`` is published after each save.
        settings: Settings store, used for the global theme fallback.
    """

    def __init__(
        self,
        local: KeyValueStore,
        cipher: Cipher,
        bus: Optional[EventBus] = None,
        settings: Optional[SettingsStore] = None,
    ) -> None:
        self._local = local
        self._cipher = cipher
        self._bus = bus
        self._settings = settings
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def has_data(self) -> bool:
        """Whether a document blob has ever been written."""
        return bool(self._local.get(DATA_SLOT))

    def load(self, strict: bool = False) -> Document:
        """Read and decrypt the document.

        Args:
            strict: Raise instead of falling back to an empty document.

        Raises:
            DecryptionError: Only when ``strict`` is set and the blob
                cannot be decrypted or parsed.
        """
        blob = self._local.get(DATA_SLOT)
        if not blob:
            return Document()
        try:
            plain = self._cipher.decrypt(blob)
            return Document.model_validate(json.loads(plain))
        except (DecryptionError, json.JSONDecodeError, ValidationError) as exc:
            if strict:
                if isinstance(exc, DecryptionError):
                    raise
                raise DecryptionError(f"Stored document is not valid: {exc}") from exc
            logger.warning("Local document unreadable, starting empty: %s", exc)
            return Document()

    def save(self, document: Document, notify: bool = True) -> None:
        """Encrypt and persist the whole document.

        Args:
            document: The document to store.
            notify: Publish ``data.changed`` afterwards. Merge writes
                pass False so a pull never schedules a push.
        """
        plain = json.dumps(document.to_wire(), ensure_ascii=False)
        blob = self._cipher.encrypt(plain)
        with self._lock:
            self._local.set({DATA_SLOT: blob})
        if notify and self._bus is not None:
            self._bus.publish(DATA_CHANGED)

    def apply(self, mutator: Callable[[Document], T], notify: bool = True) -> T:
        """Run a read-modify-write cycle under the document lock.

        Args:
            mutator: Receives the loaded document, changes it in place.
            notify: Forwarded to :meth:`save`.

        Returns:
            Whatever ``mutator`` returns.
        """
        with self._lock:
            document = self.load()
            result = mutator(document)
            self.save(document, notify=notify)
            return result

    def export_plain(self) -> Document:
        """The decrypted document, for providers that store plain text."""
        return self.load()

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_note(self, domain: str, path: str, text: str) -> Note:
        """Create a note at the top of a page."""

        def mutate(document: Document) -> Note:
            stamp = now_ms()
            note = Note(
                id=new_note_id(document.note_ids()),
                text=text,
                created_at=stamp,
                updated_at=stamp,
            )
            document.ensure_page(domain, path).notes.insert(0, note)
            return note

        note = self.apply(mutate)
        logger.debug("Added note %s on %s%s", note.id, domain, path)
        return note

    def update_note(
        self, domain: str, path: str, note_id: str, text: str
    ) -> Optional[Note]:
        """Replace a note's text.

        Returns:
            The updated note, or None if the page or note does not exist
            (nothing is written in that case).
        """
        with self._lock:
            document = self.load()
            page = document.page(domain, path)
            note = page.find(note_id) if page else None
            if note is None:
                return None
            note.text = text
            _touch(note)
            self.save(document)
            return note

    def soft_delete_note(
        self, domain: str, path: str, note_id: str
    ) -> Optional[Note]:
        """Tombstone a note so the deletion can propagate.

        Returns:
            The tombstoned note, or None if it does not exist.
        """
        with self._lock:
            document = self.load()
            page = document.page(domain, path)
            note = page.find(note_id) if page else None
            if note is None:
                return None
            note.deleted = True
            _touch(note)
            self.save(document)
            return note

    def list_notes(self, domain: str, path: str) -> list[Note]:
        """Active notes on a page, most recent first."""
        page = self.load().page(domain, path)
        return page.active_notes() if page else []

    def other_pages(self, domain: str, current_path: str) -> list[PageSummary]:
        """Other pages on the same site that have active notes."""
        record = self.load().domains.get(domain)
        if record is None:
            return []
        others = []
        for path, page in record.pages.items():
            if path == current_path:
                continue
            count = len(page.active_notes())
            if count:
                others.append(PageSummary(path=path, count=count))
        return others

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def get_domain_record(self, domain: str) -> DomainRecord:
        return self.load().domains.get(domain) or DomainRecord()

    def list_domains(self) -> list[DomainSummary]:
        """Domains that still have active notes, with counts."""
        summaries = []
        for domain, record in self.load().domains.items():
            total_notes = 0
            total_pages = 0
            for page in record.pages.values():
                active = len(page.active_notes())
                if active:
                    total_pages += 1
                    total_notes += active
            if total_notes:
                summaries.append(
                    DomainSummary(
                        domain=domain,
                        pinned=record.pinned,
                        total_notes=total_notes,
                        total_pages=total_pages,
                    )
                )
        return summaries

    def set_pinned(self, domain: str, pinned: bool) -> bool:
        def mutate(document: Document) -> bool:
            record = document.domains.setdefault(domain, DomainRecord())
            record.pinned = pinned
            return record.pinned

        return self.apply(mutate)

    def toggle_pin(self, domain: str) -> bool:
        """Flip a domain's pinned flag.

        Returns:
            The new pinned state.
        """
        def mutate(document: Document) -> bool:
            record = document.domains.setdefault(domain, DomainRecord())
            record.pinned = not record.pinned
            return record.pinned

        return self.apply(mutate)

    def is_pinned(self, domain: str) -> bool:
        record = self.load().domains.get(domain)
        return bool(record and record.pinned)

    # ------------------------------------------------------------------
    # Page display preferences
    # ------------------------------------------------------------------

    def set_theme(self, domain: str, path: str, theme: str) -> None:
        def mutate(document: Document) -> None:
            document.ensure_page(domain, path).theme = theme

        self.apply(mutate)

    def get_theme(self, domain: str, path: str) -> str:
        """Page theme, falling back to the global setting, then ``sticky``."""
        page = self.load().page(domain, path)
        if page and page.theme:
            return page.theme
        if self._settings is not None:
            return self._settings.load().theme or DEFAULT_THEME
        return DEFAULT_THEME

    def set_position(self, domain: str, path: str, left: int, top: int) -> None:
        def mutate(document: Document) -> None:
            document.ensure_page(domain, path).position = Position(left=left, top=top)

        self.apply(mutate)

    def get_position(self, domain: str, path: str) -> Optional[Position]:
        page = self.load().page(domain, path)
        return page.position if page else None
