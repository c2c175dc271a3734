"""Mail engine: runs queries and stages/commits batch mutations.

The engine is the only component that talks to both the remote mailbox and the
local state stores. Commands reference messages by shadow id; the engine
re-resolves them to their current ``(folder, uid)`` right before acting.
"""

from __future__ import annotations

from datetime import date

import structlog

from mailtrail.config import Settings
from mailtrail.engine.mailbox import MailboxProtocol, iter_chunks, newest_first
from mailtrail.exceptions import (
    BatchValidationError,
    DraftConflictError,
    DraftNotFoundError,
    IdentityNotFoundError,
    ImapError,
)
from mailtrail.models import (
    ActionType,
    BatchOutcome,
    Draft,
    DraftTarget,
    FlagParams,
    FolderInfo,
    MessageHeader,
    MutationParams,
    ResolvedMessage,
    SelectionEntry,
    TargetOutcome,
)
from mailtrail.query import Expression, parse_query, split_folder, translate
from mailtrail.state import DraftStore, IdentityStore, SelectionLedger, StateDatabase
from mailtrail.utils import chunked, resolve_folder_name

logger = structlog.get_logger()

GONE_ERROR = "message no longer available"


class MailEngine:
    """Query runner and draft/batch engine for one mailbox."""

    def __init__(
        self,
        mailbox: MailboxProtocol,
        db: StateDatabase,
        settings: Settings | None = None,
    ) -> None:
        """Create an engine.

        Args:
            mailbox: Remote mailbox adapter.
            db: Initialized state database.
            settings: Application settings. If None, uses default settings.
        """
        from mailtrail.config import get_settings

        self.settings = settings or get_settings()
        self.mailbox = mailbox
        self.identities = IdentityStore(db)
        self.ledger = SelectionLedger(db)
        self.drafts = DraftStore(db)

    # Queries

    def parse_query(self, text: str) -> Expression:
        return parse_query(text)

    async def run_query_string(self, account: str, folder: str, query: str, **kwargs) -> list[ResolvedMessage]:
        return await self.run_query(account, folder, parse_query(query), query_string=query, **kwargs)

    async def run_query(
        self,
        account: str,
        folder: str,
        expression: Expression,
        *,
        query_string: str = "",
        limit: int | None = None,
        agent_unread_only: bool = False,
        select: bool = False,
        today: date | None = None,
    ) -> list[ResolvedMessage]:
        """Run a query against one folder and record the result generation.

        An ``in:``/``folder:`` term in the query overrides ``folder``.

        Messages are returned newest first. Headers are fetched in chunks and
        fetching stops once ``limit`` matching messages were collected.

        Args:
            account: Account the folder belongs to.
            folder: Folder name or alias, used unless the query names one.
            expression: Parsed query.
            query_string: Original query text, stored with the result generation.
            limit: Maximum number of results.
            agent_unread_only: Drop messages this agent already marked as read.
            select: Add the results to the selection.
            today: Day relative dates resolve against. Defaults to the current day.

        Returns:
            The matching messages, annotated with shadow ids and agent-read state.
        """

        override, remaining = split_folder(expression)
        folder = resolve_folder_name(override or folder)
        criterion = translate(remaining, self.mailbox.search_fields, today)
        include_body = criterion.requires_post_filter and criterion.needs_body

        logger.info(
            "query_started",
            account=account,
            folder=folder,
            query=query_string or str(expression),
            remote=str(criterion.remote),
            post_filter=criterion.requires_post_filter,
        )

        uids = newest_first(await self.mailbox.search(folder, criterion.remote))
        results: list[ResolvedMessage] = []

        for chunk in chunked(uids, self.settings.fetch_batch_size):
            headers = await self.mailbox.fetch_headers(folder, chunk, include_body=include_body)
            headers = sorted(headers, key=lambda h: h.uid, reverse=True)
            if criterion.requires_post_filter:
                headers = [h for h in headers if criterion.local(h)]
            if not headers:
                continue

            shadow_ids = self.identities.observe_many(account, folder, headers)
            agent_read = self.identities.agent_read_ids(shadow_ids)

            for header, shadow_id in zip(headers, shadow_ids):
                is_agent_read = shadow_id in agent_read
                if agent_unread_only and is_agent_read:
                    continue
                results.append(_to_resolved(account, folder, header, shadow_id, is_agent_read))

            if limit is not None and len(results) >= limit:
                results = results[:limit]
                break

        entries = [
            SelectionEntry(
                account=account,
                folder=folder,
                uid=m.uid,
                shadow_id=m.shadow_id,
                message_id=m.message_id,
                subject=m.subject,
            )
            for m in results
        ]
        self.ledger.record_results(account, folder, entries, query_string or str(expression))
        if select and entries:
            self.ledger.add_to_selection(account, entries)

        logger.info("query_completed", account=account, folder=folder, searched=len(uids), matched=len(results))
        return results

    # Resolution

    async def resolve_targets(
        self,
        account: str,
        shadow_ids: list[int] | None = None,
        *,
        use_selection: bool = False,
    ) -> list[DraftTarget]:
        """Resolve shadow ids and/or the selection to current message locations.

        Raises:
            BatchValidationError: Neither ids nor the selection name any message.
            IdentityNotFoundError: Some shadow ids no longer resolve.
        """

        targets: list[DraftTarget] = []
        missing: list[int] = []
        seen: set[tuple[str, int]] = set()

        def add(target: DraftTarget) -> None:
            key = (target.folder, target.uid)
            if key not in seen:
                seen.add(key)
                targets.append(target)

        for shadow_id in shadow_ids or []:
            target = await self._resolve_shadow_id(shadow_id)
            if target is None:
                missing.append(shadow_id)
            else:
                add(target)

        if use_selection:
            for entry in self.ledger.selection(account):
                if entry.shadow_id is None:
                    add(DraftTarget(folder=entry.folder, uid=entry.uid))
                    continue
                target = await self._resolve_shadow_id(entry.shadow_id)
                if target is None:
                    missing.append(entry.shadow_id)
                else:
                    add(target)

        if missing:
            raise IdentityNotFoundError(missing)
        if not targets:
            if use_selection:
                raise BatchValidationError("Selection is empty. Use 'select add' or 'query --select' first.")
            raise BatchValidationError("No messages specified")
        return targets

    async def _resolve_shadow_id(self, shadow_id: int) -> DraftTarget | None:
        location = self.identities.resolve(shadow_id)
        if location is None:
            return None

        uid = location.uid
        if uid is None:
            if not location.message_id:
                return None
            uid = await self.mailbox.locate(location.folder, location.message_id)
            if uid is None:
                logger.warning("identity_locate_failed", shadow_id=shadow_id, folder=location.folder)
                return None
            self.identities.relocate(shadow_id, location.folder, uid)

        return DraftTarget(shadow_id=shadow_id, folder=location.folder, uid=uid)

    # Messages

    async def read_message(self, shadow_id: int, *, mark_seen: bool = False) -> ResolvedMessage:
        """Fetch one message with its body and mark it as read by this agent.

        Args:
            shadow_id: Message to read.
            mark_seen: Also set the \\Seen flag on the server.

        Raises:
            IdentityNotFoundError: The id is unknown or the message is no longer
                where it was last seen.
        """

        record = self.identities.get(shadow_id)
        target = await self._resolve_shadow_id(shadow_id) if record is not None else None
        if record is None or target is None:
            raise IdentityNotFoundError([shadow_id])

        headers = await self.mailbox.fetch_headers(target.folder, [target.uid], include_body=True)
        header = next((h for h in headers if h.uid == target.uid), None)
        if header is None:
            # Moved by another client; the next resolution locates it by Message-ID.
            self.identities.relocate(shadow_id, target.folder)
            raise IdentityNotFoundError([shadow_id], f"Message {shadow_id} is no longer in '{target.folder}'")

        if mark_seen and header.unread:
            results = await self.mailbox.mutate(
                target.folder,
                [target.uid],
                ActionType.FLAG,
                MutationParams(flag_params=FlagParams(read=True)),
            )
            if all(r.succeeded for r in results):
                header = header.model_copy(update={"unread": False})
            else:
                logger.warning("message_mark_seen_failed", shadow_id=shadow_id, folder=target.folder)

        self.identities.observe_many(record.account, target.folder, [header])
        self.identities.mark_agent_read(shadow_id)
        logger.info("message_read", account=record.account, shadow_id=shadow_id, folder=target.folder)

        message = _to_resolved(record.account, target.folder, header, shadow_id, True)
        return message.model_copy(update={"body": header.body})

    async def list_folders(self) -> list[FolderInfo]:
        return await self.mailbox.list_folders()

    # Drafts

    def get_draft(self, account: str) -> Draft | None:
        return self.drafts.get(account)

    async def stage_batch(
        self,
        account: str,
        action: ActionType,
        *,
        shadow_ids: list[int] | None = None,
        use_selection: bool = False,
        params: FlagParams | None = None,
        dest_folder: str | None = None,
        permanent: bool = False,
    ) -> Draft:
        """Validate parameters, resolve targets and stage a draft.

        Raises:
            BatchValidationError: Parameters are inconsistent or no target is given.
            DraftConflictError: A draft is already staged for the account.
            IdentityNotFoundError: Some shadow ids no longer resolve.
        """

        params, dest = self._validate(action, params, dest_folder, permanent)

        existing = self.drafts.get(account)
        if existing is not None:
            raise DraftConflictError(account, existing.action.value)

        targets = await self.resolve_targets(account, shadow_ids, use_selection=use_selection)
        folders = list(dict.fromkeys(t.folder for t in targets))

        draft = Draft(
            account=account,
            action=action,
            folder=", ".join(folders),
            targets=targets,
            flag_params=params,
            dest_folder=dest,
            permanent=permanent if action == ActionType.DELETE else False,
        )
        return self.drafts.stage(draft)

    def _validate(
        self,
        action: ActionType,
        params: FlagParams | None,
        dest_folder: str | None,
        permanent: bool,
    ) -> tuple[FlagParams | None, str | None]:
        if action == ActionType.FLAG:
            if params is None or not params.has_any_action():
                raise BatchValidationError(
                    "No flag changes specified. Use --read, --unread, --star, --unstar, "
                    "--label, --unlabel or --move-to."
                )
            if params.move_to:
                params = params.model_copy(update={"move_to": resolve_folder_name(params.move_to)})
            return params, None

        if params is not None and params.has_any_action():
            raise BatchValidationError(f"Flag changes are only valid for the flag action, not {action.value}")

        if action in (ActionType.MOVE, ActionType.COPY):
            if not dest_folder or not dest_folder.strip():
                raise BatchValidationError(f"A destination folder is required for {action.value}")
            return None, resolve_folder_name(dest_folder)
        if action == ActionType.DELETE:
            return None, (None if permanent else self.settings.trash_folder)
        return None, self.settings.archive_folder

    async def commit_batch(self, account: str) -> BatchOutcome:
        """Apply the staged draft against the remote mailbox.

        Only targets that have not yet succeeded are attempted. Outcomes are
        persisted after every chunk; the draft is cleared only when every
        target succeeded.

        Raises:
            DraftNotFoundError: No draft is staged for the account.
        """

        draft = self.drafts.get(account)
        if draft is None:
            raise DraftNotFoundError(f"No draft staged for {account}")

        targets = draft.targets
        retry = draft.is_partial
        to_run = [t for t in targets if t.outcome != TargetOutcome.SUCCEEDED]
        for target in to_run:
            await self._refresh_target(target)

        params = MutationParams(
            flag_params=draft.flag_params,
            dest_folder=draft.dest_folder,
            permanent=draft.permanent,
        )
        runnable = [t for t in to_run if t.outcome == TargetOutcome.PENDING]

        logger.info(
            "batch_commit_started",
            account=account,
            action=draft.action.value,
            targets=len(runnable),
            retry=retry,
        )

        if len(runnable) != len(to_run):
            self._record_outcomes(draft)

        for folder, chunk in iter_chunks(runnable, self.settings.batch_size):
            uids = [t.uid for t in chunk]
            try:
                results = await self.mailbox.mutate(folder, uids, draft.action, params)
            except ImapError as exc:
                logger.warning("batch_chunk_failed", account=account, folder=folder, count=len(chunk), error=str(exc))
                for target in chunk:
                    target.outcome = TargetOutcome.FAILED
                    target.error = str(exc)
            else:
                by_uid = {r.uid: r for r in results}
                for target in chunk:
                    result = by_uid.get(target.uid)
                    if result is not None and result.succeeded:
                        target.outcome = TargetOutcome.SUCCEEDED
                        target.error = None
                        self._update_identity(draft, target)
                    else:
                        target.outcome = TargetOutcome.FAILED
                        target.error = result.error if result is not None else "no result reported"

            self._record_outcomes(draft)

        committed = all(t.outcome == TargetOutcome.SUCCEEDED for t in targets)
        if committed:
            try:
                self.drafts.clear(draft)
            except DraftNotFoundError as exc:
                raise _draft_replaced(draft, exc) from exc

        outcome = BatchOutcome(account=account, action=draft.action, targets=targets, committed=committed)
        logger.info(
            "batch_commit_completed",
            account=account,
            action=draft.action.value,
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
            committed=committed,
        )
        return outcome

    async def _refresh_target(self, target: DraftTarget) -> None:
        target.outcome = TargetOutcome.PENDING
        target.error = None
        if target.shadow_id is None:
            return

        record = self.identities.get(target.shadow_id)
        if record is None:
            # Cache reset since staging: keep the staged location.
            return
        if record.is_gone:
            target.outcome = TargetOutcome.FAILED
            target.error = GONE_ERROR
            return

        try:
            refreshed = await self._resolve_shadow_id(target.shadow_id)
        except ImapError as exc:
            logger.warning("batch_target_locate_failed", shadow_id=target.shadow_id, error=str(exc))
            target.outcome = TargetOutcome.FAILED
            target.error = str(exc)
            return
        if refreshed is None:
            target.outcome = TargetOutcome.FAILED
            target.error = GONE_ERROR
            return
        target.folder = refreshed.folder
        target.uid = refreshed.uid

    def _record_outcomes(self, draft: Draft) -> None:
        try:
            self.drafts.record_outcomes(draft)
        except DraftNotFoundError as exc:
            raise _draft_replaced(draft, exc) from exc

    def _update_identity(self, draft: Draft, target: DraftTarget) -> None:
        if target.shadow_id is None or self.identities.get(target.shadow_id) is None:
            return

        if draft.action == ActionType.DELETE and draft.permanent:
            self.identities.mark_gone(target.shadow_id)
        elif draft.action in (ActionType.MOVE, ActionType.ARCHIVE, ActionType.DELETE):
            assert draft.dest_folder is not None
            self.identities.relocate(target.shadow_id, draft.dest_folder)
        elif draft.action == ActionType.FLAG and draft.flag_params and draft.flag_params.move_to:
            self.identities.relocate(target.shadow_id, draft.flag_params.move_to)

    def discard_batch(self, account: str) -> bool:
        return self.drafts.discard(account)

    async def execute_batch(
        self,
        account: str,
        action: ActionType,
        *,
        shadow_ids: list[int] | None = None,
        use_selection: bool = False,
        params: FlagParams | None = None,
        dest_folder: str | None = None,
        permanent: bool = False,
        keep_selection: bool = False,
    ) -> BatchOutcome:
        """Stage and immediately commit a batch.

        When the batch used the selection and fully succeeded, the selection
        is cleared unless ``keep_selection`` is set.
        """

        await self.stage_batch(
            account,
            action,
            shadow_ids=shadow_ids,
            use_selection=use_selection,
            params=params,
            dest_folder=dest_folder,
            permanent=permanent,
        )
        outcome = await self.commit_batch(account)
        if outcome.committed and use_selection and not keep_selection:
            self.ledger.clear_selection(account)
        return outcome

    # Selection

    async def select_ids(self, account: str, shadow_ids: list[int]) -> int:
        """Add messages to the selection by shadow id."""

        targets = await self.resolve_targets(account, shadow_ids)
        added = 0
        for target in targets:
            assert target.shadow_id is not None
            record = self.identities.get(target.shadow_id)
            entry = SelectionEntry(
                account=account,
                folder=target.folder,
                uid=target.uid,
                shadow_id=target.shadow_id,
                message_id=record.message_id if record else None,
                subject=record.subject if record else None,
            )
            added += self.ledger.add_to_selection(account, [entry])
        return added

    def select_last(self, account: str, folder: str | None = None) -> int:
        """Add the last query result of ``folder`` to the selection."""

        folder = resolve_folder_name(folder or self.settings.default_folder)
        entries = self.ledger.last_results(account, folder)
        if not entries:
            return 0
        return self.ledger.add_to_selection(account, entries)

    def deselect(self, account: str, shadow_ids: list[int]) -> int:
        return self.ledger.remove_shadow_ids(account, shadow_ids)

    def clear_selection(self, account: str, folder: str | None = None) -> int:
        return self.ledger.clear_selection(account, resolve_folder_name(folder) if folder else None)

    def selection(self, account: str) -> list[SelectionEntry]:
        return self.ledger.selection(account)

    # Local state

    def mark_agent_read(self, shadow_ids: list[int]) -> int:
        """Mark messages as processed by this agent.

        Raises:
            IdentityNotFoundError: Some ids are unknown. Nothing is marked in that case.
        """

        missing = [i for i in shadow_ids if self.identities.get(i) is None]
        if missing:
            raise IdentityNotFoundError(missing, f"Unknown message ids: {', '.join(map(str, missing))}")
        for shadow_id in shadow_ids:
            self.identities.mark_agent_read(shadow_id)
        return len(shadow_ids)

    def reset_cache(self, account: str | None = None) -> int:
        return self.identities.reset(account)


def _draft_replaced(draft: Draft, exc: DraftNotFoundError) -> DraftNotFoundError:
    applied = sum(1 for t in draft.targets if t.outcome == TargetOutcome.SUCCEEDED)
    logger.error(
        "batch_draft_replaced",
        account=draft.account,
        draft_id=draft.id,
        applied=applied,
        error=str(exc),
    )
    return DraftNotFoundError(
        f"The draft for {draft.account} was discarded or replaced during the commit; "
        f"{applied} message(s) had already been changed. The newer draft was left untouched."
    )


def _to_resolved(
    account: str,
    folder: str,
    header: MessageHeader,
    shadow_id: int,
    agent_read: bool,
) -> ResolvedMessage:
    return ResolvedMessage(
        shadow_id=shadow_id,
        account=account,
        folder=folder,
        uid=header.uid,
        message_id=header.message_id,
        subject=header.subject,
        sender=header.sender,
        date=header.date,
        size=header.size,
        unread=header.unread,
        agent_read=agent_read,
        has_attachment=header.has_attachment,
    )
