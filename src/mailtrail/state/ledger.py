"""Selection and query history ledger.

Keeps, per account and folder, the most recent query result generation and a
user-curated selection. Both store the location a message had when it was
recorded plus its shadow id; callers re-resolve the shadow id before use.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

import structlog

from mailtrail.models import SelectionEntry
from mailtrail.state.database import StateDatabase, from_iso, utc_now

logger = structlog.get_logger()


@dataclass(frozen=True)
class QueryHistory:
    """The query that produced the current generation of a folder."""

    account: str
    folder: str
    query: str
    executed_at: datetime | None


class SelectionLedger:
    """Repository for selections and query result generations."""

    def __init__(self, db: StateDatabase) -> None:
        self._db = db

    def record_results(
        self,
        account: str,
        folder: str,
        entries: Iterable[SelectionEntry],
        query_string: str = "",
    ) -> None:
        """Replace the previous result generation of ``(account, folder)`` atomically."""

        rows = [
            (account, folder, position, e.uid, e.shadow_id, e.message_id, e.subject)
            for position, e in enumerate(entries)
        ]
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM query_history_results WHERE account=? AND folder=?",
                (account, folder),
            )
            conn.executemany(
                """
                INSERT INTO query_history_results(
                    account, folder, position, uid, shadow_id, message_id, subject
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.execute(
                """
                INSERT INTO query_history(account, folder, query, executed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account, folder) DO UPDATE SET
                    query=excluded.query,
                    executed_at=excluded.executed_at
                """,
                (account, folder, query_string, utc_now()),
            )
        logger.debug("query_results_recorded", account=account, folder=folder, count=len(rows))

    def last_results(self, account: str, folder: str) -> list[SelectionEntry]:
        with self._db.read() as conn:
            rows = conn.execute(
                """
                SELECT account, folder, uid, shadow_id, message_id, subject
                FROM query_history_results
                WHERE account=? AND folder=?
                ORDER BY position
                """,
                (account, folder),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def last_query(self, account: str, folder: str) -> QueryHistory | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT account, folder, query, executed_at FROM query_history WHERE account=? AND folder=?",
                (account, folder),
            ).fetchone()
        if row is None:
            return None
        return QueryHistory(
            account=row["account"],
            folder=row["folder"],
            query=row["query"],
            executed_at=from_iso(row["executed_at"]),
        )

    def add_to_selection(self, account: str, entries: Iterable[SelectionEntry]) -> int:
        """Add entries to the selection, each under its own folder.

        An entry whose shadow id is already selected under another location
        replaces that row, so each message is selected at most once.

        Returns:
            Number of entries written.
        """

        now = utc_now()
        written = 0
        with self._db.transaction() as conn:
            for entry in entries:
                if entry.shadow_id is not None:
                    conn.execute(
                        "DELETE FROM selections WHERE account=? AND shadow_id=? AND NOT (folder=? AND uid=?)",
                        (account, entry.shadow_id, entry.folder, entry.uid),
                    )
                conn.execute(
                    """
                    INSERT INTO selections(account, folder, uid, shadow_id, message_id, subject, added_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account, folder, uid) DO UPDATE SET
                        shadow_id=excluded.shadow_id,
                        message_id=excluded.message_id,
                        subject=excluded.subject
                    """,
                    (account, entry.folder, entry.uid, entry.shadow_id, entry.message_id, entry.subject, now),
                )
                written += 1
        logger.debug("selection_added", account=account, count=written)
        return written

    def remove_from_selection(self, account: str, folder: str, uids: Iterable[int]) -> int:
        with self._db.transaction() as conn:
            removed = 0
            for uid in uids:
                removed += conn.execute(
                    "DELETE FROM selections WHERE account=? AND folder=? AND uid=?",
                    (account, folder, uid),
                ).rowcount
        return removed

    def remove_shadow_ids(self, account: str, shadow_ids: Iterable[int]) -> int:
        with self._db.transaction() as conn:
            removed = 0
            for shadow_id in shadow_ids:
                removed += conn.execute(
                    "DELETE FROM selections WHERE account=? AND shadow_id=?",
                    (account, shadow_id),
                ).rowcount
        return removed

    def selection(self, account: str, folder: str | None = None) -> list[SelectionEntry]:
        query = (
            "SELECT account, folder, uid, shadow_id, message_id, subject FROM selections WHERE account=?"
        )
        params: tuple = (account,)
        if folder is not None:
            query += " AND folder=?"
            params = (account, folder)
        query += " ORDER BY folder, uid"

        with self._db.read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_entry(r) for r in rows]

    def selection_count(self, account: str) -> int:
        with self._db.read() as conn:
            row = conn.execute("SELECT COUNT(*) AS c FROM selections WHERE account=?", (account,)).fetchone()
        return int(row["c"])

    def clear_selection(self, account: str, folder: str | None = None) -> int:
        with self._db.transaction() as conn:
            if folder is None:
                cursor = conn.execute("DELETE FROM selections WHERE account=?", (account,))
            else:
                cursor = conn.execute(
                    "DELETE FROM selections WHERE account=? AND folder=?",
                    (account, folder),
                )
        return int(cursor.rowcount)


def _row_to_entry(row: sqlite3.Row) -> SelectionEntry:
    return SelectionEntry(
        account=row["account"],
        folder=row["folder"],
        uid=int(row["uid"]),
        shadow_id=row["shadow_id"],
        message_id=row["message_id"],
        subject=row["subject"],
    )
