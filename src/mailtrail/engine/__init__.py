"""Query execution and batch mutation engine."""

from mailtrail.engine.mailbox import MailboxProtocol
from mailtrail.engine.service import MailEngine

__all__ = ["MailEngine", "MailboxProtocol"]
