"""
Sync data models -- provider choice, chunk metadata and sync state.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..models import SyncProvider

# Pull tries backends in this order and stops at the first payload.
PULL_ORDER = (
    SyncProvider.CHROME,
    SyncProvider.DRIVE,
    SyncProvider.GITHUB,
    SyncProvider.FEISHU,
)


class SyncPhase(str, Enum):
    """Where the coordinator is in its push/pull cycle."""

    IDLE = "idle"
    PENDING_PUSH = "pending_push"
    PUSHING = "pushing"
    PULLING = "pulling"


class ChunkMeta(BaseModel):
    """Metadata record written next to the chunked payload."""

    chunks: int = Field(ge=0)
    ts: int = Field(description="Write time, epoch milliseconds")


class SyncState(BaseModel):
    """Current sync state persisted in the local scope."""

    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    last_push_backends: list[str] = Field(default_factory=list)
    last_pull_backend: Optional[str] = None
    push_count: int = 0
    pull_count: int = 0
    last_error: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome reported to a UI-triggered sync action."""

    ok: bool
    error: Optional[str] = None
    backends: dict[str, bool] = Field(default_factory=dict)


__all__ = [
    "ChunkMeta",
    "PULL_ORDER",
    "SyncPhase",
    "SyncProvider",
    "SyncResult",
    "SyncState",
]
