"""
Document models — the note tree that every device keeps and syncs.

    Document
    └── domains: {hostname: DomainRecord}
        ├── pinned
        └── pages: {path: PageRecord}
            ├── theme / pos
            └── notes: [Note, ...]   (most recent first)

Serialised with the compact keys used by existing installations
(``v``, ``ts``, ``uTs``, ``del``, ``pos``); the long names are
accepted on input as well.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = 1


class SyncProvider(str, Enum):
    """Sync provider choices stored in settings.

    ``ALL`` and ``NONE`` are coordinator policies, not backends.
    """

    CHROME = "chrome"
    DRIVE = "drive"
    GITHUB = "github"
    FEISHU = "feishu"
    ALL = "all"
    NONE = "none"


class WireModel(BaseModel):
    """Base for models that round-trip through JSON blobs."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump using the on-disk key names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Position(WireModel):
    """Pixel offset of a page's note panel."""

    left: int
    top: int

    @field_validator("left", "top", mode="before")
    @classmethod
    def _round_pixels(cls, value: Any) -> Any:
        # Layout rects report fractional pixels.
        if isinstance(value, float):
            return round(value)
        return value


class Note(WireModel):
    """A single note. The unit of conflict resolution."""

    id: str
    text: str = ""
    created_at: int = Field(
        default=0,
        alias="ts",
        validation_alias=AliasChoices("ts", "createdAt", "created_at"),
    )
    updated_at: int = Field(
        default=0,
        alias="uTs",
        validation_alias=AliasChoices("uTs", "updatedAt", "updated_at"),
    )
    deleted: bool = Field(
        default=False,
        alias="del",
        validation_alias=AliasChoices("del", "deleted"),
    )


class PageRecord(WireModel):
    """Notes and display preferences for one URL path."""

    notes: list[Note] = Field(default_factory=list)
    theme: Optional[str] = None
    position: Optional[Position] = Field(
        default=None,
        alias="pos",
        validation_alias=AliasChoices("pos", "position"),
    )

    def active_notes(self) -> list[Note]:
        """Notes that are not tombstoned."""
        return [n for n in self.notes if not n.deleted]

    def find(self, note_id: str) -> Optional[Note]:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None


class DomainRecord(WireModel):
    """All pages noted on one hostname."""

    pinned: bool = False
    pages: dict[str, PageRecord] = Field(default_factory=dict)


class Document(WireModel):
    """The whole note tree for one installation."""

    version: int = Field(
        default=SCHEMA_VERSION,
        alias="v",
        validation_alias=AliasChoices("v", "version"),
    )
    domains: dict[str, DomainRecord] = Field(default_factory=dict)

    def page(self, domain: str, path: str) -> Optional[PageRecord]:
        """Look up a page without creating it."""
        record = self.domains.get(domain)
        if record is None:
            return None
        return record.pages.get(path)

    def ensure_page(self, domain: str, path: str) -> PageRecord:
        """Look up a page, creating the domain and page records lazily."""
        record = self.domains.setdefault(domain, DomainRecord())
        return record.pages.setdefault(path, PageRecord())

    def note_ids(self) -> set[str]:
        """Every note id in the document, tombstones included."""
        return {
            note.id
            for record in self.domains.values()
            for page in record.pages.values()
            for note in page.notes
        }


class DomainSummary(BaseModel):
    """Per-domain counts for list views."""

    domain: str
    pinned: bool = False
    total_notes: int = 0
    total_pages: int = 0


class PageSummary(BaseModel):
    """Active note count for one page."""

    path: str
    count: int
