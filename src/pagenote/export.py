"""Markdown export of the note document."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import Document

EXPORT_TITLE = "PageNote Export"
PIN_MARK = "⭐"


def _format_ms(stamp: int) -> str:
    return datetime.fromtimestamp(stamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


def render_markdown(document: Document, exported_at: Optional[datetime] = None) -> str:
    """Render active notes as Markdown.

    One ``##`` section per domain (starred when pinned), one ``###``
    subsection per page with active notes, one bullet per note with its
    creation time. Tombstones are left out.
    """
    exported_at = exported_at or datetime.now()
    lines = [
        f"# {EXPORT_TITLE}",
        "",
        f"> Exported: {exported_at.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
    ]

    for domain, record in document.domains.items():
        heading = f"## {domain} {PIN_MARK}" if record.pinned else f"## {domain}"
        lines.extend([heading, ""])
        for path, page in record.pages.items():
            active = page.active_notes()
            if not active:
                continue
            lines.extend([f"### {path}", ""])
            for note in active:
                lines.append(f"- {note.text} _({_format_ms(note.created_at)})_")
            lines.append("")

    return "\n".join(lines)


NO_DATA = "# No data\n"
EXPORT_FAILED = "# Export failed\n\nThe stored notes could not be decrypted.\n"
