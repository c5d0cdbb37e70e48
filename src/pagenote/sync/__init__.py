"""
Encrypted note sync -- push, pull and merge across providers.

The local document never leaves the device in the clear, with one
opt-in exception: the Feishu table provider stores readable rows.

Providers: chrome (chunked synced scope), drive (Google Drive),
github (private gist), feishu (Bitable), or the all/none policies.
"""

from .engine import SyncCoordinator
from .merge import merge_documents

__all__ = ["SyncCoordinator", "merge_documents"]
