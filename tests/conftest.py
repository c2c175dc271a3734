"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from datetime import date, datetime, timezone

import pytest

from mailtrail.exceptions import ImapError
from mailtrail.models import ActionType, FolderInfo, MessageHeader, MutationParams, TargetResult
from mailtrail.query import IMAP_SEARCH_FIELDS

ACCOUNT = "me@example.com"


class FakeMailbox:
    """In-memory mailbox that interprets the IMAP criteria the translator emits."""

    def __init__(self, search_fields=IMAP_SEARCH_FIELDS) -> None:
        self.search_fields = frozenset(search_fields)
        self.folders: dict[str, dict[int, MessageHeader]] = {}
        self._next_uid: dict[str, int] = {}
        self.fail_uids: dict[int, str] = {}
        self.raise_on_mutate: str | None = None
        self.raise_on_locate: str | None = None
        # Awaited inside mutate, to interleave another invocation with a commit.
        self.before_mutate: Callable[[], Awaitable[None]] | None = None
        self.searches: list[tuple[str, list]] = []
        self.fetches: list[tuple[str, list[int], bool]] = []
        self.mutations: list[tuple[str, list[int], ActionType]] = []

    def add(
        self,
        folder: str = "INBOX",
        *,
        message_id: str | None = None,
        subject: str = "",
        sender: str | None = "Alice <alice@example.com>",
        recipients: list[str] | None = None,
        sent: datetime | None = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        size: int = 1000,
        unread: bool = True,
        body: str | None = None,
        has_attachment: bool = False,
    ) -> int:
        uid = self._allocate(folder)
        self.folders[folder][uid] = MessageHeader(
            uid=uid,
            message_id=message_id,
            subject=subject,
            sender=sender,
            recipients=recipients or [ACCOUNT],
            date=sent,
            size=size,
            unread=unread,
            flags=[] if unread else ["\\Seen"],
            body=body,
            has_attachment=has_attachment,
        )
        return uid

    def _allocate(self, folder: str) -> int:
        self.folders.setdefault(folder, {})
        uid = self._next_uid.get(folder, 1)
        self._next_uid[folder] = uid + 1
        return uid

    def uid_of(self, folder: str, message_id: str) -> int | None:
        for uid, header in self.folders.get(folder, {}).items():
            if header.message_id == message_id:
                return uid
        return None

    def move_external(self, message_id: str, src: str, dest: str) -> int:
        """Move a message the way another client would."""

        uid = self.uid_of(src, message_id)
        assert uid is not None
        header = self.folders[src].pop(uid)
        new_uid = self._allocate(dest)
        self.folders[dest][new_uid] = header.model_copy(update={"uid": new_uid})
        return new_uid

    async def search(self, folder: str, criteria: list) -> list[int]:
        self.searches.append((folder, criteria))
        return [uid for uid, msg in self.folders.get(folder, {}).items() if match_criteria(criteria, msg)]

    async def fetch_headers(
        self,
        folder: str,
        uids: Sequence[int],
        include_body: bool = False,
    ) -> list[MessageHeader]:
        self.fetches.append((folder, list(uids), include_body))
        messages = self.folders.get(folder, {})
        return [
            messages[uid] if include_body else messages[uid].model_copy(update={"body": None})
            for uid in uids
            if uid in messages
        ]

    async def locate(self, folder: str, message_id: str) -> int | None:
        if self.raise_on_locate:
            raise ImapError(self.raise_on_locate)
        return self.uid_of(folder, message_id)

    async def list_folders(self) -> list[FolderInfo]:
        return [FolderInfo(name=name, delimiter="/") for name in sorted(self.folders)]

    async def mutate(
        self,
        folder: str,
        uids: Sequence[int],
        action: ActionType,
        params: MutationParams,
    ) -> list[TargetResult]:
        self.mutations.append((folder, list(uids), action))
        if self.before_mutate is not None:
            await self.before_mutate()
        if self.raise_on_mutate:
            raise ImapError(self.raise_on_mutate)

        results = []
        for uid in uids:
            if uid in self.fail_uids:
                results.append(TargetResult(uid=uid, succeeded=False, error=self.fail_uids[uid]))
                continue
            if uid not in self.folders.get(folder, {}):
                results.append(TargetResult(uid=uid, succeeded=False, error="no such message"))
                continue
            self._apply(folder, uid, action, params)
            results.append(TargetResult(uid=uid, succeeded=True))
        return results

    def _apply(self, folder: str, uid: int, action: ActionType, params: MutationParams) -> None:
        header = self.folders[folder][uid]
        if action == ActionType.FLAG:
            fp = params.flag_params
            assert fp is not None
            flags = set(header.flags)
            if fp.read is not None:
                (flags.add if fp.read else flags.discard)("\\Seen")
            if fp.starred is not None:
                (flags.add if fp.starred else flags.discard)("\\Flagged")
            flags.update(fp.labels)
            flags.difference_update(fp.unlabels)
            self.folders[folder][uid] = header.model_copy(
                update={"flags": sorted(flags), "unread": "\\Seen" not in flags}
            )
            if fp.move_to:
                self._relocate(folder, uid, fp.move_to, keep=False)
        elif action == ActionType.COPY:
            self._relocate(folder, uid, params.dest_folder, keep=True)
        elif action == ActionType.DELETE and params.permanent:
            del self.folders[folder][uid]
        else:
            self._relocate(folder, uid, params.dest_folder, keep=False)

    def _relocate(self, folder: str, uid: int, dest: str | None, *, keep: bool) -> None:
        assert dest is not None
        header = self.folders[folder][uid] if keep else self.folders[folder].pop(uid)
        new_uid = self._allocate(dest)
        self.folders[dest][new_uid] = header.model_copy(update={"uid": new_uid})


def _contains(value: str | None, needle: str) -> bool:
    return value is not None and needle.lower() in value.lower()


def match_criteria(criteria: list, msg: MessageHeader) -> bool:
    """Evaluate imapclient search criteria the way an IMAP server would."""

    items = list(criteria)
    i = 0
    while i < len(items):
        key = items[i]
        if isinstance(key, list):
            ok, i = match_criteria(key, msg), i + 1
        elif key == "ALL":
            ok, i = True, i + 1
        elif key == "OR":
            ok, i = match_criteria(items[i + 1], msg) or match_criteria(items[i + 2], msg), i + 3
        elif key == "NOT":
            ok, i = not match_criteria(items[i + 1], msg), i + 2
        elif key == "UNSEEN":
            ok, i = msg.unread, i + 1
        elif key == "SEEN":
            ok, i = not msg.unread, i + 1
        elif key == "FROM":
            ok, i = _contains(msg.sender, items[i + 1]), i + 2
        elif key == "TO":
            ok, i = any(_contains(r, items[i + 1]) for r in msg.recipients), i + 2
        elif key == "SUBJECT":
            ok, i = _contains(msg.subject, items[i + 1]), i + 2
        elif key == "BODY":
            ok, i = _contains(msg.body, items[i + 1]), i + 2
        elif key == "SENTSINCE":
            day: date = items[i + 1]
            ok, i = msg.date is not None and msg.date.date() >= day, i + 2
        elif key == "SENTBEFORE":
            day = items[i + 1]
            ok, i = msg.date is not None and msg.date.date() < day, i + 2
        elif key == "LARGER":
            ok, i = msg.size is not None and msg.size > items[i + 1], i + 2
        elif key == "SMALLER":
            ok, i = msg.size is not None and msg.size < items[i + 1], i + 2
        elif key == "HEADER":
            assert items[i + 1].lower() == "message-id"
            ok, i = msg.message_id == items[i + 2], i + 3
        else:
            raise AssertionError(f"unexpected criterion {key!r}")
        if not ok:
            return False
    return True


@pytest.fixture
def mock_settings(tmp_path):
    """Provide settings pointing at a temporary state database."""
    from mailtrail.config import Settings

    return Settings(
        account=ACCOUNT,
        state_db_path=tmp_path / "state.sqlite3",
        log_level="DEBUG",
        debug=True,
        batch_size=100,
        fetch_batch_size=25,
    )


@pytest.fixture
def state_db(tmp_path):
    """Provide an initialized state database."""
    from mailtrail.state import StateDatabase

    db = StateDatabase(tmp_path / "state.sqlite3", busy_timeout=5.0)
    db.initialize()
    return db


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def engine(fake_mailbox, state_db, mock_settings):
    from mailtrail.engine import MailEngine

    return MailEngine(fake_mailbox, state_db, mock_settings)
