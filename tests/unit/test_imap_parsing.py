"""Unit tests for IMAP fetch-response parsing helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from imapclient.response_types import Address, Envelope

from mailtrail.imap.parsing import (
    decode_header_value,
    extract_body,
    fetch_item_to_header,
    format_address,
    has_attachment_part,
)


def make_envelope(**overrides) -> Envelope:
    fields = dict(
        date=datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
        subject=b"=?utf-8?q?Caf=C3=A9_weekly?=",
        from_=(Address(b"GitHub", None, b"noreply", b"github.com"),),
        sender=None,
        reply_to=None,
        to=(Address(None, None, b"me", b"example.com"), Address(b"Bob", None, b"bob", b"example.com")),
        cc=None,
        bcc=None,
        in_reply_to=None,
        message_id=b"<abc@github.com>",
    )
    fields.update(overrides)
    return Envelope(**fields)


def test_fetch_item_to_header_parses_envelope_and_flags() -> None:
    data = {
        b"ENVELOPE": make_envelope(),
        b"FLAGS": (b"\\Seen", b"todo"),
        b"RFC822.SIZE": 4096,
    }

    header = fetch_item_to_header(42, data)

    assert header.uid == 42
    assert header.message_id == "<abc@github.com>"
    assert header.subject == "Café weekly"
    assert header.sender == "GitHub <noreply@github.com>"
    assert header.recipients == ["me@example.com", "Bob <bob@example.com>"]
    assert header.date == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    assert header.size == 4096
    assert header.unread is False
    assert header.flags == ["\\Seen", "todo"]
    assert header.body is None
    assert header.has_attachment is False


def test_missing_seen_flag_means_unread() -> None:
    header = fetch_item_to_header(1, {b"ENVELOPE": make_envelope(), b"FLAGS": ()})

    assert header.unread is True


def test_missing_message_id_and_date() -> None:
    header = fetch_item_to_header(1, {b"ENVELOPE": make_envelope(message_id=None, date=None), b"FLAGS": ()})

    assert header.message_id is None
    assert header.date is None


def test_body_is_extracted_when_fetched() -> None:
    raw = (
        b"From: a@example.com\r\n"
        b"Subject: hi\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"Deploy finished\r\n"
    )

    header = fetch_item_to_header(1, {b"ENVELOPE": make_envelope(), b"FLAGS": (), b"BODY[]": raw})

    assert header.body is not None
    assert "Deploy finished" in header.body


def test_extract_body_prefers_plain_text() -> None:
    raw = (
        b"Content-Type: multipart/alternative; boundary=XX\r\n"
        b"\r\n"
        b"--XX\r\n"
        b"Content-Type: text/html\r\n\r\n<p>html</p>\r\n"
        b"--XX\r\n"
        b"Content-Type: text/plain\r\n\r\nplain text\r\n"
        b"--XX--\r\n"
    )

    assert extract_body(raw).strip() == "plain text"
    assert extract_body(None) is None


def test_format_address_and_decode() -> None:
    assert format_address(Address(None, None, b"me", b"example.com")) == "me@example.com"
    assert format_address(Address(b"Group", None, None, None)) is None
    assert decode_header_value(None) == ""
    assert decode_header_value(b"plain") == "plain"


def test_attachment_disposition_in_multipart_structure() -> None:
    text_part = (b"text", b"plain", (b"charset", b"utf-8"), None, None, b"7bit", 120, 4, None, None, None, None)
    pdf_part = (
        b"application",
        b"pdf",
        (b"name", b"invoice.pdf"),
        None,
        None,
        b"base64",
        40960,
        None,
        (b"ATTACHMENT", (b"filename", b"invoice.pdf")),
        None,
        None,
    )
    structure = ([text_part, pdf_part], b"mixed", (b"boundary", b"XX"), None, None, None)

    header = fetch_item_to_header(1, {b"ENVELOPE": make_envelope(), b"FLAGS": (), b"BODYSTRUCTURE": structure})

    assert header.has_attachment is True


def test_inline_parts_are_not_attachments() -> None:
    image_part = (b"image", b"png", (b"name", b"logo.png"), None, None, b"base64", 2048, None, (b"inline", None), None)
    text_part = (b"text", b"html", (b"charset", b"utf-8"), None, None, b"7bit", 300, 10, None, None, None, None)

    assert has_attachment_part(([text_part, image_part], b"related", None, None, None)) is False
    assert has_attachment_part(text_part) is False
    assert has_attachment_part(None) is False
