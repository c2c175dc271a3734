"""mailtrail - query and batch-edit an IMAP mailbox from the command line.

This package provides a Gmail-style query language, a local SQLite state store
that keeps stable message identities across folder moves, and a draft/commit
workflow for batch flag, move, copy, delete and archive operations.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mailtrail.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
