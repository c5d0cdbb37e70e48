"""
PageNote — encrypted web page notes that follow you between devices.

Attach a short note to any page. Notes are stored locally under
AES-GCM and kept consistent across the sync provider you choose.

Entry point: pagenote.cli:main
"""

import os

__version__ = "0.1.0"
__author__ = "PageNote contributors"

PAGENOTE_HOME = os.environ.get("PAGENOTE_HOME", "~/.pagenote")
