"""Helpers for parsing imapclient FETCH responses into internal models."""

from __future__ import annotations

import email
from datetime import datetime
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.policy import default as default_policy
from typing import Any

from mailtrail.models import MessageHeader

SEEN = "\\Seen"
FLAGGED = "\\Flagged"

FETCH_ITEMS = ["ENVELOPE", "FLAGS", "RFC822.SIZE", "BODYSTRUCTURE"]
FETCH_ITEMS_WITH_BODY = FETCH_ITEMS + ["BODY.PEEK[]"]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return str(value)


def decode_header_value(value: Any) -> str:
    """Decode an RFC 2047 encoded header value."""

    raw = _text(value)
    if not raw:
        return ""
    try:
        return str(make_header(decode_header(raw)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return raw


def format_address(address: Any) -> str | None:
    """Format an imapclient ``Address`` as ``Name <mailbox@host>``."""

    if address is None:
        return None
    mailbox = _text(address.mailbox)
    host = _text(address.host)
    if not mailbox:
        # Group syntax markers carry no mailbox.
        return None
    addr = f"{mailbox}@{host}" if host else mailbox
    name = decode_header_value(address.name)
    return f"{name} <{addr}>" if name else addr


def _addresses(addresses: Any) -> list[str]:
    if not addresses:
        return []
    formatted = (format_address(a) for a in addresses)
    return [a for a in formatted if a]


def _flags(raw: Any) -> list[str]:
    return [_text(f) for f in raw or ()]


def _message_id(envelope: Any) -> str | None:
    value = _text(getattr(envelope, "message_id", None)).strip()
    return value or None


def has_attachment_part(structure: Any) -> bool:
    """Whether a BODYSTRUCTURE response has a part with an attachment disposition."""

    if not isinstance(structure, (list, tuple)):
        return False
    # Dispositions are (type, params) pairs, e.g. (b"attachment", (b"filename", b"a.pdf")).
    if len(structure) == 2 and isinstance(structure[0], (bytes, str)):
        if _text(structure[0]).lower() == "attachment":
            return True
    return any(has_attachment_part(item) for item in structure)


def extract_body(raw: bytes | None) -> str | None:
    """Return the preferred text body of a raw RFC 822 message."""

    if not raw:
        return None
    message = email.message_from_bytes(raw, policy=default_policy)
    if not isinstance(message, EmailMessage):
        return None
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    try:
        return part.get_content()
    except (LookupError, KeyError):
        payload = part.get_payload(decode=True)
        return payload.decode("utf-8", errors="replace") if payload else ""


def fetch_item_to_header(uid: int, data: dict[bytes, Any]) -> MessageHeader:
    """Convert one imapclient FETCH response item to a ``MessageHeader``.

    Args:
        uid: UID the item was fetched for.
        data: Mapping of fetch keys (``b"ENVELOPE"``, ``b"FLAGS"``...) to values.

    Returns:
        MessageHeader: Parsed header model.
    """

    envelope = data.get(b"ENVELOPE")
    flags = _flags(data.get(b"FLAGS"))

    sender = None
    recipients: list[str] = []
    subject = ""
    sent: datetime | None = None
    message_id = None

    if envelope is not None:
        senders = _addresses(envelope.from_)
        sender = senders[0] if senders else None
        recipients = _addresses(envelope.to)
        subject = decode_header_value(envelope.subject)
        sent = envelope.date if isinstance(envelope.date, datetime) else None
        message_id = _message_id(envelope)

    size = data.get(b"RFC822.SIZE")
    body = extract_body(data.get(b"BODY[]")) if b"BODY[]" in data else None

    return MessageHeader(
        uid=uid,
        message_id=message_id,
        subject=subject,
        sender=sender,
        recipients=recipients,
        date=sent,
        size=int(size) if size is not None else None,
        unread=SEEN not in flags,
        flags=flags,
        has_attachment=has_attachment_part(data.get(b"BODYSTRUCTURE")),
        body=body,
    )
