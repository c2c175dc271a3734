"""Message metadata models.

Headers are what the mailbox adapter returns from a FETCH; records and locations
are what the identity store keeps about a message between invocations.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class MessageHeader(BaseModel):
    """Visible attributes of a remote message as fetched from one folder."""

    uid: int = Field(description="Server UID within the folder the message was fetched from")
    message_id: str | None = Field(default=None, description="Message-ID header, if the server exposes one")

    subject: str = Field(default="", description="Decoded Subject header")
    # Display form, e.g. "Alice <alice@example.com>".
    sender: str | None = Field(default=None, description="Formatted From address")
    recipients: list[str] = Field(default_factory=list, description="Formatted To addresses")

    date: datetime | None = Field(default=None, description="Sent date from the Date header")
    size: int | None = Field(default=None, description="RFC822 size in bytes")

    unread: bool = Field(default=False, description="Whether the message lacks the \\Seen flag")
    flags: list[str] = Field(default_factory=list, description="Raw IMAP flags")

    has_attachment: bool = Field(default=False, description="Whether BODYSTRUCTURE lists an attachment part")

    body: str | None = Field(default=None, description="Text body, only fetched when a filter needs it")


class MessageRecord(BaseModel):
    """A row of the identity store."""

    shadow_id: int = Field(description="Stable local identity of the message")
    account: str
    folder: str | None = Field(default=None, description="Current folder, None once the message is gone")
    uid: int | None = Field(default=None, description="Current UID, None when unknown or gone")
    message_id: str | None = None
    subject: str | None = None
    sender: str | None = None
    date_sent: datetime | None = None
    agent_read: bool = False
    first_seen: datetime
    last_seen: datetime

    @property
    def is_gone(self) -> bool:
        return self.folder is None


class MessageLocation(BaseModel):
    """Where a shadow identity currently lives on the server."""

    shadow_id: int
    folder: str
    # None after this client moved the message and the new UID has not been observed yet.
    uid: int | None = None
    message_id: str | None = None


class ResolvedMessage(BaseModel):
    """A query result joined with its shadow identity and local flags."""

    shadow_id: int = Field(description="Stable local identity of the message")
    account: str
    folder: str
    uid: int
    message_id: str | None = None
    subject: str = ""
    sender: str | None = None
    date: datetime | None = None
    size: int | None = None
    unread: bool = False
    agent_read: bool = False
    has_attachment: bool = False
    body: str | None = Field(default=None, description="Text body, set by read_message")
