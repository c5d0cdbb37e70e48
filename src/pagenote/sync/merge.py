"""
Note-level merge of a remote document into the local one.

Rules:
    - A domain or page missing locally is adopted wholesale.
    - ``pinned`` merges by OR: a remote pin pins locally, nothing un-pins.
    - Notes merge by id. Unknown ids are appended. A known id takes the
      remote copy only when its ``updated_at`` is strictly greater, so
      ties keep the local copy.

Ordering is by wall clock alone, without vector clocks. Clock skew
between devices can occasionally let an older edit win; that is an
accepted limitation, and tombstones are never pruned, so documents only
grow over time.
"""

from __future__ import annotations

import logging

from ..models import Document

logger = logging.getLogger("pagenote.sync.merge")


def merge_documents(remote: Document, local: Document) -> Document:
    """Merge ``remote`` into a copy of ``local``.

    Neither input is modified.

    Returns:
        The merged document.
    """
    merged = local.model_copy(deep=True)
    adopted = 0
    replaced = 0

    for domain, remote_domain in remote.domains.items():
        local_domain = merged.domains.get(domain)
        if local_domain is None:
            merged.domains[domain] = remote_domain.model_copy(deep=True)
            adopted += sum(len(p.notes) for p in remote_domain.pages.values())
            continue

        if remote_domain.pinned:
            local_domain.pinned = True

        for path, remote_page in remote_domain.pages.items():
            local_page = local_domain.pages.get(path)
            if local_page is None:
                local_domain.pages[path] = remote_page.model_copy(deep=True)
                adopted += len(remote_page.notes)
                continue

            by_id = {note.id: i for i, note in enumerate(local_page.notes)}
            for remote_note in remote_page.notes:
                index = by_id.get(remote_note.id)
                if index is None:
                    local_page.notes.append(remote_note.model_copy())
                    by_id[remote_note.id] = len(local_page.notes) - 1
                    adopted += 1
                elif remote_note.updated_at > local_page.notes[index].updated_at:
                    local_page.notes[index] = remote_note.model_copy()
                    replaced += 1

    logger.debug("Merge adopted %d note(s), replaced %d", adopted, replaced)
    return merged
