"""Unit tests for the selection and query history ledger."""

from __future__ import annotations

import threading

import pytest

from mailtrail.models import SelectionEntry
from mailtrail.state import IdentityStore, SelectionLedger

ACCOUNT = "me@example.com"


@pytest.fixture
def ledger(state_db) -> SelectionLedger:
    return SelectionLedger(state_db)


@pytest.fixture
def identities(state_db) -> IdentityStore:
    return IdentityStore(state_db)


def entry(uid: int, shadow_id: int | None = None, folder: str = "INBOX") -> SelectionEntry:
    return SelectionEntry(account=ACCOUNT, folder=folder, uid=uid, shadow_id=shadow_id, subject=f"msg {uid}")


def test_record_results_replaces_generation(ledger: SelectionLedger) -> None:
    ledger.record_results(ACCOUNT, "INBOX", [entry(3), entry(2), entry(1)], "from:a")
    ledger.record_results(ACCOUNT, "INBOX", [entry(9)], "from:b")

    assert [e.uid for e in ledger.last_results(ACCOUNT, "INBOX")] == [9]
    history = ledger.last_query(ACCOUNT, "INBOX")
    assert history is not None
    assert history.query == "from:b"
    assert history.executed_at is not None


def test_record_results_keeps_order(ledger: SelectionLedger) -> None:
    ledger.record_results(ACCOUNT, "INBOX", [entry(5), entry(1), entry(3)])

    assert [e.uid for e in ledger.last_results(ACCOUNT, "INBOX")] == [5, 1, 3]


def test_generations_are_per_folder(ledger: SelectionLedger) -> None:
    ledger.record_results(ACCOUNT, "INBOX", [entry(1)])
    ledger.record_results(ACCOUNT, "Archive", [entry(2, folder="Archive")])

    assert [e.uid for e in ledger.last_results(ACCOUNT, "INBOX")] == [1]
    assert [e.uid for e in ledger.last_results(ACCOUNT, "Archive")] == [2]
    assert ledger.last_query(ACCOUNT, "Spam") is None


def test_add_to_selection_is_idempotent(ledger: SelectionLedger) -> None:
    ledger.add_to_selection(ACCOUNT, [entry(1), entry(2)])
    ledger.add_to_selection(ACCOUNT, [entry(2)])

    assert ledger.selection_count(ACCOUNT) == 2


def test_same_shadow_id_under_new_location_is_stored_once(
    ledger: SelectionLedger, identities: IdentityStore
) -> None:
    shadow_id = identities.observe(ACCOUNT, "INBOX", 1, "<a@x>")
    ledger.add_to_selection(ACCOUNT, [entry(1, shadow_id)])

    identities.observe(ACCOUNT, "Archive", 7, "<a@x>")
    ledger.add_to_selection(ACCOUNT, [entry(7, shadow_id, folder="Archive")])

    selection = ledger.selection(ACCOUNT)
    assert len(selection) == 1
    assert (selection[0].folder, selection[0].uid) == ("Archive", 7)


def test_remove_and_clear(ledger: SelectionLedger, identities: IdentityStore) -> None:
    shadow_id = identities.observe(ACCOUNT, "INBOX", 3, "<c@x>")
    ledger.add_to_selection(ACCOUNT, [entry(1), entry(2), entry(3, shadow_id)])
    ledger.add_to_selection(ACCOUNT, [entry(4, folder="Archive")])

    assert ledger.remove_from_selection(ACCOUNT, "INBOX", [1]) == 1
    assert ledger.remove_shadow_ids(ACCOUNT, [shadow_id]) == 1
    assert [e.uid for e in ledger.selection(ACCOUNT, "INBOX")] == [2]

    assert ledger.clear_selection(ACCOUNT, "Archive") == 1
    assert ledger.clear_selection(ACCOUNT) == 1
    assert ledger.selection(ACCOUNT) == []


def test_cache_reset_detaches_shadow_ids(ledger: SelectionLedger, identities: IdentityStore) -> None:
    shadow_id = identities.observe(ACCOUNT, "INBOX", 1, "<a@x>")
    ledger.add_to_selection(ACCOUNT, [entry(1, shadow_id)])

    identities.reset(ACCOUNT)

    [selected] = ledger.selection(ACCOUNT)
    assert selected.shadow_id is None
    assert selected.uid == 1


def test_entries_from_mixed_folders_keep_their_folder(ledger: SelectionLedger) -> None:
    ledger.add_to_selection(ACCOUNT, [entry(1), entry(1, folder="Archive"), entry(2, folder="Work")])

    assert [(e.folder, e.uid) for e in ledger.selection(ACCOUNT)] == [
        ("Archive", 1),
        ("INBOX", 1),
        ("Work", 2),
    ]


def test_readers_never_see_a_half_replaced_generation(state_db) -> None:
    writer_ledger = SelectionLedger(state_db)
    reader_ledger = SelectionLedger(state_db)
    generations = 30
    size = 20
    seen: list[list[int]] = []
    errors: list[BaseException] = []
    done = threading.Event()

    def write() -> None:
        try:
            for generation in range(generations):
                uids = range(generation * 100, generation * 100 + size)
                writer_ledger.record_results(ACCOUNT, "INBOX", [entry(uid) for uid in uids], f"gen {generation}")
        except BaseException as exc:
            errors.append(exc)
        finally:
            done.set()

    def read() -> None:
        try:
            while not done.is_set():
                seen.append([e.uid for e in reader_ledger.last_results(ACCOUNT, "INBOX")])
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=write), threading.Thread(target=read)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    for uids in seen:
        if not uids:
            continue
        assert len(uids) == size
        assert len({uid // 100 for uid in uids}) == 1
    assert [e.uid for e in reader_ledger.last_results(ACCOUNT, "INBOX")][0] == (generations - 1) * 100
