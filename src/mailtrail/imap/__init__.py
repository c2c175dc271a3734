"""IMAP adapter for the mail engine."""

from mailtrail.imap.client import ImapMailbox
from mailtrail.imap.parsing import fetch_item_to_header

__all__ = ["ImapMailbox", "fetch_item_to_header"]
