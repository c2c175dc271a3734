"""Identity store: stable shadow identities for remote messages.

A remote message is addressed by ``(folder, uid)``, which changes whenever the
message moves. The store keys messages by ``(account, Message-ID)`` instead and
hands out an integer shadow id that survives moves. Messages without a
Message-ID fall back to ``(account, folder, uid)`` and are therefore not
reconciled across folders.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime

import structlog

from mailtrail.exceptions import IdentityNotFoundError
from mailtrail.models import MessageHeader, MessageLocation, MessageRecord
from mailtrail.state.database import StateDatabase, from_iso, to_iso, utc_now

logger = structlog.get_logger()


class IdentityStore:
    """Repository for message records and their shadow identities."""

    def __init__(self, db: StateDatabase) -> None:
        self._db = db

    def observe(
        self,
        account: str,
        folder: str,
        uid: int,
        message_id: str | None,
        subject: str | None = None,
        sender: str | None = None,
        date: datetime | None = None,
    ) -> int:
        """Record that a message was seen at ``(folder, uid)`` and return its shadow id."""

        with self._db.transaction() as conn:
            return self._observe(conn, account, folder, uid, message_id, subject, sender, date, utc_now())

    def observe_many(self, account: str, folder: str, headers: Iterable[MessageHeader]) -> list[int]:
        """Observe a page of fetched headers in one transaction.

        Returns:
            Shadow ids in the order of ``headers``.
        """

        now = utc_now()
        with self._db.transaction() as conn:
            return [
                self._observe(
                    conn,
                    account,
                    folder,
                    header.uid,
                    header.message_id,
                    header.subject,
                    header.sender,
                    header.date,
                    now,
                )
                for header in headers
            ]

    def _observe(
        self,
        conn: sqlite3.Connection,
        account: str,
        folder: str,
        uid: int,
        message_id: str | None,
        subject: str | None,
        sender: str | None,
        date: datetime | None,
        now: str,
    ) -> int:
        message_id = message_id or None
        if message_id is not None:
            row = conn.execute(
                "SELECT id, folder, uid FROM messages WHERE account=? AND message_id=?",
                (account, message_id),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT id, folder, uid FROM messages "
                "WHERE account=? AND folder=? AND uid=? AND message_id IS NULL",
                (account, folder, uid),
            ).fetchone()

        if row is not None:
            if (row["folder"], row["uid"]) != (folder, uid):
                logger.debug(
                    "identity_relocated",
                    shadow_id=row["id"],
                    old_folder=row["folder"],
                    old_uid=row["uid"],
                    folder=folder,
                    uid=uid,
                )
            conn.execute(
                """
                UPDATE messages SET
                    folder=?,
                    uid=?,
                    subject=COALESCE(?, subject),
                    sender=COALESCE(?, sender),
                    date_sent=COALESCE(?, date_sent),
                    last_seen=?
                WHERE id=?
                """,
                (folder, uid, subject, sender, to_iso(date), now, row["id"]),
            )
            return int(row["id"])

        cursor = conn.execute(
            """
            INSERT INTO messages(
                account, folder, uid, message_id, subject, sender, date_sent,
                agent_read, first_seen, last_seen
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (account, folder, uid, message_id, subject, sender, to_iso(date), now, now),
        )
        return int(cursor.lastrowid)

    def get(self, shadow_id: int) -> MessageRecord | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id=?", (shadow_id,)).fetchone()
        return None if row is None else _row_to_record(row)

    def resolve(self, shadow_id: int) -> MessageLocation | None:
        """Return where the message currently lives, or None when unknown or gone."""

        with self._db.read() as conn:
            row = conn.execute(
                "SELECT id, folder, uid, message_id FROM messages WHERE id=?",
                (shadow_id,),
            ).fetchone()
        if row is None or row["folder"] is None:
            return None
        return MessageLocation(
            shadow_id=int(row["id"]),
            folder=row["folder"],
            uid=row["uid"],
            message_id=row["message_id"],
        )

    def agent_read_ids(self, shadow_ids: Iterable[int]) -> set[int]:
        ids = list(shadow_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        with self._db.read() as conn:
            rows = conn.execute(
                f"SELECT id FROM messages WHERE agent_read=1 AND id IN ({placeholders})",
                ids,
            ).fetchall()
        return {int(r["id"]) for r in rows}

    def is_agent_read(self, shadow_id: int) -> bool:
        return shadow_id in self.agent_read_ids([shadow_id])

    def mark_agent_read(self, shadow_id: int) -> None:
        """Set the agent-read flag. Repeated calls are no-ops.

        Raises:
            IdentityNotFoundError: The shadow id is unknown.
        """

        with self._db.transaction() as conn:
            cursor = conn.execute("UPDATE messages SET agent_read=1 WHERE id=?", (shadow_id,))
            if cursor.rowcount == 0:
                raise IdentityNotFoundError([shadow_id])

    def relocate(self, shadow_id: int, folder: str, uid: int | None = None) -> None:
        """Point a record at a new location after this client moved the message."""

        with self._db.transaction() as conn:
            if uid is not None:
                # A Message-ID-less record must not collide with another one at the target slot.
                conn.execute(
                    "UPDATE messages SET folder=NULL, uid=NULL "
                    "WHERE id<>? AND folder=? AND uid=? AND message_id IS NULL "
                    "AND account=(SELECT account FROM messages WHERE id=?)",
                    (shadow_id, folder, uid, shadow_id),
                )
            conn.execute(
                "UPDATE messages SET folder=?, uid=?, last_seen=? WHERE id=?",
                (folder, uid, utc_now(), shadow_id),
            )

    def mark_gone(self, shadow_id: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE messages SET folder=NULL, uid=NULL, last_seen=? WHERE id=?",
                (utc_now(), shadow_id),
            )

    def count(self, account: str | None = None) -> int:
        with self._db.read() as conn:
            if account is None:
                row = conn.execute("SELECT COUNT(*) AS c FROM messages").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS c FROM messages WHERE account=?", (account,)).fetchone()
        return int(row["c"])

    def reset(self, account: str | None = None) -> int:
        """Delete message records (all accounts when ``account`` is None).

        Returns:
            Number of deleted records.
        """

        with self._db.transaction() as conn:
            if account is None:
                cursor = conn.execute("DELETE FROM messages")
            else:
                cursor = conn.execute("DELETE FROM messages WHERE account=?", (account,))
        logger.info("identity_cache_reset", account=account, deleted=cursor.rowcount)
        return int(cursor.rowcount)


def _row_to_record(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        shadow_id=int(row["id"]),
        account=row["account"],
        folder=row["folder"],
        uid=row["uid"],
        message_id=row["message_id"],
        subject=row["subject"],
        sender=row["sender"],
        date_sent=from_iso(row["date_sent"]),
        agent_read=bool(row["agent_read"]),
        first_seen=from_iso(row["first_seen"]),
        last_seen=from_iso(row["last_seen"]),
    )
