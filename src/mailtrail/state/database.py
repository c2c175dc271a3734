"""SQLite state database: connections, transactions and schema migrations.

All mutating operations run inside ``BEGIN IMMEDIATE`` so that two processes
never interleave a read-check-write sequence. The database runs in WAL mode so
readers keep seeing the last committed state while a writer is active.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mailtrail.exceptions import StateStoreError

logger = structlog.get_logger()


_MIGRATIONS: list[list[str]] = [
    # v1: identity store
    [
        """
        CREATE TABLE messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account TEXT NOT NULL,
            folder TEXT,
            uid INTEGER,
            message_id TEXT,
            subject TEXT,
            sender TEXT,
            date_sent TEXT,
            agent_read INTEGER NOT NULL DEFAULT 0,
            first_seen TEXT NOT NULL,
            last_seen TEXT NOT NULL
        )
        """,
        """
        CREATE UNIQUE INDEX idx_messages_account_message_id
        ON messages(account, message_id) WHERE message_id IS NOT NULL
        """,
        """
        CREATE UNIQUE INDEX idx_messages_location_without_message_id
        ON messages(account, folder, uid) WHERE message_id IS NULL
        """,
        "CREATE INDEX idx_messages_location ON messages(account, folder, uid)",
    ],
    # v2: selection and query history ledger
    [
        """
        CREATE TABLE selections (
            account TEXT NOT NULL,
            folder TEXT NOT NULL,
            uid INTEGER NOT NULL,
            shadow_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
            message_id TEXT,
            subject TEXT,
            added_at TEXT NOT NULL,
            PRIMARY KEY (account, folder, uid)
        )
        """,
        "CREATE INDEX idx_selections_shadow_id ON selections(account, shadow_id)",
        """
        CREATE TABLE query_history (
            account TEXT NOT NULL,
            folder TEXT NOT NULL,
            query TEXT NOT NULL,
            executed_at TEXT NOT NULL,
            PRIMARY KEY (account, folder)
        )
        """,
        """
        CREATE TABLE query_history_results (
            account TEXT NOT NULL,
            folder TEXT NOT NULL,
            position INTEGER NOT NULL,
            uid INTEGER NOT NULL,
            shadow_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
            message_id TEXT,
            subject TEXT,
            PRIMARY KEY (account, folder, position)
        )
        """,
    ],
    # v3: drafts
    [
        """
        CREATE TABLE drafts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account TEXT NOT NULL UNIQUE,
            action TEXT NOT NULL,
            folder TEXT NOT NULL,
            targets_json TEXT NOT NULL,
            flag_params_json TEXT,
            dest_folder TEXT,
            permanent INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    ],
]

SCHEMA_VERSION = len(_MIGRATIONS)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class StateDatabase:
    """Owner of the SQLite file shared by the identity, ledger and draft stores."""

    def __init__(self, db_path: Path, busy_timeout: float = 10.0) -> None:
        """Create a database handle.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds to wait on a lock held by another connection.
        """

        self._db_path = db_path
        self._busy_timeout = busy_timeout

    @property
    def path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or upgrade the schema by applying pending migrations in order."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            current_version = self._get_schema_version(conn) or 0

            if current_version > SCHEMA_VERSION:
                raise StateStoreError(
                    f"State database {self._db_path} has schema version {current_version}, "
                    f"newer than supported version {SCHEMA_VERSION}"
                )

            for version in range(current_version + 1, SCHEMA_VERSION + 1):
                for statement in _MIGRATIONS[version - 1]:
                    conn.execute(statement)
                self._set_schema_version(conn, version)
                logger.info("state_migration_applied", version=version, db_path=str(self._db_path))

    def schema_version(self) -> int:
        with self.read() as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='_schema_meta'"
            ).fetchone()
            if row is None:
                return 0
            return self._get_schema_version(conn) or 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body in a ``BEGIN IMMEDIATE`` transaction.

        The transaction commits when the body returns and rolls back on any
        exception. SQLite errors are raised as ``StateStoreError``.
        """

        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.DatabaseError as exc:
                logger.error("state_transaction_begin_failed", error=str(exc))
                raise StateStoreError(str(exc)) from exc

            try:
                yield conn
            except sqlite3.DatabaseError as exc:
                conn.execute("ROLLBACK")
                logger.error("state_transaction_failed", error=str(exc))
                raise StateStoreError(str(exc)) from exc
            except BaseException:
                conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.DatabaseError as exc:
                conn.execute("ROLLBACK")
                logger.error("state_transaction_commit_failed", error=str(exc))
                raise StateStoreError(str(exc)) from exc

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Run the body in a deferred transaction so all reads share one snapshot."""

        with self._connect() as conn:
            try:
                conn.execute("BEGIN")
                yield conn
            except sqlite3.DatabaseError as exc:
                conn.execute("ROLLBACK")
                raise StateStoreError(str(exc)) from exc
            else:
                conn.execute("COMMIT")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self._db_path,
                timeout=self._busy_timeout,
                isolation_level=None,
            )
        except sqlite3.DatabaseError as exc:
            raise StateStoreError(f"Cannot open state database {self._db_path}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)};")
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute("SELECT value FROM _schema_meta WHERE key='schema_version'").fetchone()
        if row is None:
            return None
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return None

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            """
            INSERT INTO _schema_meta(key, value) VALUES('schema_version', ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (str(version),),
        )
