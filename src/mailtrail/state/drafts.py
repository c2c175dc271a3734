"""Durable drafts of batch mutations, at most one per account."""

from __future__ import annotations

import json
import sqlite3

import structlog

from mailtrail.exceptions import DraftConflictError, DraftNotFoundError
from mailtrail.models import ActionType, Draft, DraftTarget, FlagParams
from mailtrail.state.database import StateDatabase, from_iso, to_iso, utc_now

logger = structlog.get_logger()


class DraftStore:
    """Repository for staged drafts.

    Every staged draft gets a fresh row id (AUTOINCREMENT, never reused).
    Writes made by a commit match on that id and leave a re-staged draft of
    the same account alone.
    """

    def __init__(self, db: StateDatabase) -> None:
        self._db = db

    def stage(self, draft: Draft) -> Draft:
        """Persist a new draft.

        The existence check and the insert share one ``BEGIN IMMEDIATE``
        transaction, so two processes racing to stage for the same account
        cannot both succeed.

        Returns:
            The draft with its row id set.

        Raises:
            DraftConflictError: A draft is already staged for the account.
        """

        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT action FROM drafts WHERE account=?",
                (draft.account,),
            ).fetchone()
            if existing is not None:
                raise DraftConflictError(draft.account, existing["action"])

            cursor = conn.execute(
                """
                INSERT INTO drafts(
                    account, action, folder, targets_json, flag_params_json,
                    dest_folder, permanent, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.account,
                    draft.action.value,
                    draft.folder,
                    _dump_targets(draft.targets),
                    draft.flag_params.model_dump_json() if draft.flag_params else None,
                    draft.dest_folder,
                    int(draft.permanent),
                    to_iso(draft.created_at),
                    to_iso(draft.updated_at),
                ),
            )
            draft_id = cursor.lastrowid

        logger.info(
            "draft_staged",
            account=draft.account,
            draft_id=draft_id,
            action=draft.action.value,
            targets=len(draft.targets),
        )
        return draft.model_copy(update={"id": draft_id})

    def get(self, account: str) -> Draft | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM drafts WHERE account=?", (account,)).fetchone()
        return None if row is None else _row_to_draft(row)

    def record_outcomes(self, draft: Draft) -> None:
        """Persist the per-target outcomes carried by ``draft``.

        Raises:
            DraftNotFoundError: This draft is no longer staged (committed,
                discarded, or replaced by a newer draft).
        """

        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE drafts SET targets_json=?, updated_at=? WHERE account=? AND id=?",
                (_dump_targets(draft.targets), utc_now(), draft.account, draft.id),
            )
            if cursor.rowcount == 0:
                raise DraftNotFoundError(f"Draft {draft.id} is no longer staged for {draft.account}")

    def discard(self, account: str) -> bool:
        """Remove the account's draft. Returns False when there was none."""

        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM drafts WHERE account=?", (account,))
        discarded = cursor.rowcount > 0
        if discarded:
            logger.info("draft_discarded", account=account)
        return discarded

    def clear(self, draft: Draft) -> None:
        """Delete ``draft`` after a complete commit.

        Raises:
            DraftNotFoundError: This draft is no longer staged.
        """

        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM drafts WHERE account=? AND id=?",
                (draft.account, draft.id),
            )
            if cursor.rowcount == 0:
                raise DraftNotFoundError(f"Draft {draft.id} is no longer staged for {draft.account}")


def _dump_targets(targets: list[DraftTarget]) -> str:
    return json.dumps([t.model_dump(mode="json") for t in targets])


def _row_to_draft(row: sqlite3.Row) -> Draft:
    flag_params = None
    if row["flag_params_json"]:
        flag_params = FlagParams.model_validate_json(row["flag_params_json"])

    return Draft(
        id=row["id"],
        account=row["account"],
        action=ActionType(row["action"]),
        folder=row["folder"],
        targets=[DraftTarget.model_validate(t) for t in json.loads(row["targets_json"])],
        flag_params=flag_params,
        dest_folder=row["dest_folder"],
        permanent=bool(row["permanent"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )
