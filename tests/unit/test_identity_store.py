"""Unit tests for the identity store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mailtrail.exceptions import IdentityNotFoundError, StateStoreError
from mailtrail.models import MessageHeader
from mailtrail.state import SCHEMA_VERSION, IdentityStore, StateDatabase

ACCOUNT = "me@example.com"


@pytest.fixture
def store(state_db) -> IdentityStore:
    return IdentityStore(state_db)


def test_initialize_is_idempotent(tmp_path) -> None:
    db = StateDatabase(tmp_path / "state.sqlite3")
    db.initialize()
    db.initialize()

    assert db.schema_version() == SCHEMA_VERSION


def test_newer_schema_is_rejected(state_db) -> None:
    with state_db.transaction() as conn:
        conn.execute("UPDATE _schema_meta SET value=? WHERE key='schema_version'", (str(SCHEMA_VERSION + 1),))

    with pytest.raises(StateStoreError):
        state_db.initialize()


def test_observe_assigns_stable_id(store: IdentityStore) -> None:
    first = store.observe(ACCOUNT, "INBOX", 10, "<a@x>", subject="Hello")
    again = store.observe(ACCOUNT, "INBOX", 10, "<a@x>")

    assert first == again
    record = store.get(first)
    assert record is not None
    assert record.subject == "Hello"
    assert record.folder == "INBOX"
    assert record.uid == 10


def test_observe_reconciles_moves_by_message_id(store: IdentityStore) -> None:
    shadow_id = store.observe(ACCOUNT, "INBOX", 10, "<a@x>")

    moved = store.observe(ACCOUNT, "Archive", 3, "<a@x>")

    assert moved == shadow_id
    location = store.resolve(shadow_id)
    assert location is not None
    assert (location.folder, location.uid) == ("Archive", 3)


def test_message_id_scoped_per_account(store: IdentityStore) -> None:
    a = store.observe(ACCOUNT, "INBOX", 1, "<a@x>")
    b = store.observe("other@example.com", "INBOX", 1, "<a@x>")

    assert a != b


def test_messages_without_message_id_are_keyed_by_location(store: IdentityStore) -> None:
    first = store.observe(ACCOUNT, "INBOX", 5, None)

    assert store.observe(ACCOUNT, "INBOX", 5, None) == first
    # Not reconciled across folders.
    assert store.observe(ACCOUNT, "Archive", 1, None) != first


def test_observe_many_preserves_order(store: IdentityStore) -> None:
    headers = [
        MessageHeader(uid=3, message_id="<c@x>", subject="c"),
        MessageHeader(uid=1, message_id="<a@x>", subject="a", date=datetime(2024, 1, 1, tzinfo=timezone.utc)),
    ]

    ids = store.observe_many(ACCOUNT, "INBOX", headers)

    assert len(ids) == 2
    assert store.get(ids[0]).uid == 3
    assert store.get(ids[1]).date_sent == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_resolve_unknown_returns_none(store: IdentityStore) -> None:
    assert store.resolve(999) is None
    assert store.get(999) is None


def test_agent_read_flag(store: IdentityStore) -> None:
    shadow_id = store.observe(ACCOUNT, "INBOX", 1, "<a@x>")
    assert store.is_agent_read(shadow_id) is False

    store.mark_agent_read(shadow_id)
    store.mark_agent_read(shadow_id)

    assert store.is_agent_read(shadow_id) is True
    # Survives a move.
    store.observe(ACCOUNT, "Archive", 7, "<a@x>")
    assert store.is_agent_read(shadow_id) is True


def test_mark_agent_read_unknown_raises(store: IdentityStore) -> None:
    with pytest.raises(IdentityNotFoundError) as exc_info:
        store.mark_agent_read(42)

    assert exc_info.value.shadow_ids == [42]


def test_relocate_sets_uid_pending(store: IdentityStore) -> None:
    shadow_id = store.observe(ACCOUNT, "INBOX", 1, "<a@x>")

    store.relocate(shadow_id, "Archive")

    location = store.resolve(shadow_id)
    assert location is not None
    assert location.folder == "Archive"
    assert location.uid is None


def test_mark_gone(store: IdentityStore) -> None:
    shadow_id = store.observe(ACCOUNT, "INBOX", 1, "<a@x>")

    store.mark_gone(shadow_id)

    assert store.resolve(shadow_id) is None
    record = store.get(shadow_id)
    assert record is not None
    assert record.is_gone


def test_reset_removes_records(store: IdentityStore) -> None:
    shadow_id = store.observe(ACCOUNT, "INBOX", 1, "<a@x>")
    store.observe("other@example.com", "INBOX", 1, "<b@x>")

    assert store.reset(ACCOUNT) == 1

    assert store.get(shadow_id) is None
    assert store.count() == 1
    # Ids are never reused.
    assert store.observe(ACCOUNT, "INBOX", 1, "<a@x>") > shadow_id


def test_failed_transaction_rolls_back(state_db, store: IdentityStore) -> None:
    with pytest.raises(StateStoreError):
        with state_db.transaction() as conn:
            conn.execute(
                "INSERT INTO messages(account, folder, uid, message_id, first_seen, last_seen) "
                "VALUES (?, ?, ?, ?, 'x', 'x')",
                (ACCOUNT, "INBOX", 1, "<dup@x>"),
            )
            conn.execute(
                "INSERT INTO messages(account, folder, uid, message_id, first_seen, last_seen) "
                "VALUES (?, ?, ?, ?, 'x', 'x')",
                (ACCOUNT, "INBOX", 2, "<dup@x>"),
            )

    assert store.count(ACCOUNT) == 0
