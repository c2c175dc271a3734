"""IMAP mailbox adapter.

This module implements the engine's mailbox capability on top of an IMAP
server (typically a local bridge).

Notes:
    imapclient is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    Calls are awaited one at a time; the underlying connection is not shared
    between threads concurrently.
"""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Collection, Sequence
from typing import Any, Callable, TypeVar

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from mailtrail.config import Settings
from mailtrail.exceptions import AuthenticationError, ImapError
from mailtrail.imap.parsing import (
    FETCH_ITEMS,
    FETCH_ITEMS_WITH_BODY,
    FLAGGED,
    SEEN,
    fetch_item_to_header,
)
from mailtrail.models import ActionType, FlagParams, FolderInfo, MessageHeader, MutationParams, TargetResult
from mailtrail.query import IMAP_SEARCH_FIELDS
from mailtrail.utils import retry_on_failure

logger = structlog.get_logger()

T = TypeVar("T")

_REMOTE_ERRORS = (IMAPClientError, OSError)
# Criteria the server could not be sent, e.g. non-ASCII text without a charset.
_REQUEST_ERRORS = _REMOTE_ERRORS + (UnicodeError,)


class ImapMailbox:
    """IMAP implementation of the engine's mailbox capability."""

    def __init__(self, account: str, password: str | None, settings: Settings | None = None) -> None:
        """Initialize the adapter.

        Args:
            account: IMAP login, usually the account email address.
            password: IMAP password (for a bridge, the bridge-generated password).
                None creates an adapter that refuses to connect.
            settings: Application settings. If None, uses default settings.
        """
        from mailtrail.config import get_settings

        self.settings = settings or get_settings()
        self.account = account
        self._password = password
        self._client: IMAPClient | None = None
        self._selected: tuple[str, bool] | None = None

    @property
    def search_fields(self) -> Collection[str]:
        return IMAP_SEARCH_FIELDS

    async def authenticate(self) -> None:
        """Connect and log in.

        Raises:
            AuthenticationError: If the server rejects the credentials.
            ImapError: If the server cannot be reached.
        """

        if self._client is not None:
            return
        if self._password is None:
            raise AuthenticationError(f"No password available for {self.account}")

        logger.info(
            "imap_connecting",
            host=self.settings.imap_host,
            port=self.settings.imap_port,
            ssl=self.settings.imap_ssl,
            account=self.account,
        )

        connect = retry_on_failure(
            max_retries=self.settings.max_retries,
            delay=1.0,
            exceptions=(OSError,),
        )(self._connect_sync)

        try:
            self._client = await asyncio.to_thread(connect)
        except LoginError as exc:
            logger.error("imap_authentication_failed", account=self.account, error=str(exc))
            raise AuthenticationError(f"IMAP login failed for {self.account}: {exc}") from exc
        except _REMOTE_ERRORS as exc:
            logger.exception("imap_connection_failed", error=str(exc))
            raise ImapError(
                f"Cannot connect to {self.settings.imap_host}:{self.settings.imap_port}: {exc}"
            ) from exc

        logger.info("imap_authenticated", account=self.account)

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client, self._selected = self._client, None, None
        try:
            await asyncio.to_thread(client.logout)
        except _REMOTE_ERRORS as exc:
            logger.warning("imap_logout_failed", error=str(exc))

    async def __aenter__(self) -> ImapMailbox:
        await self.authenticate()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def search(self, folder: str, criteria: list) -> list[int]:
        """Run a UID SEARCH in ``folder``."""

        logger.debug("imap_search", folder=folder, criteria=str(criteria))
        return await self._call("imap_search_failed", self._search_sync, folder, criteria)

    async def fetch_headers(
        self,
        folder: str,
        uids: Sequence[int],
        include_body: bool = False,
    ) -> list[MessageHeader]:
        """Fetch envelopes, flags and sizes (and optionally bodies) for ``uids``."""

        if not uids:
            return []
        logger.debug("imap_fetch", folder=folder, count=len(uids), include_body=include_body)
        return await self._call("imap_fetch_failed", self._fetch_sync, folder, list(uids), include_body)

    async def mutate(
        self,
        folder: str,
        uids: Sequence[int],
        action: ActionType,
        params: MutationParams,
    ) -> list[TargetResult]:
        """Apply ``action`` to ``uids`` and report the outcome of each UID."""

        logger.info("imap_mutate", folder=folder, action=action.value, count=len(uids))
        return await self._call("imap_mutate_failed", self._mutate_sync, folder, list(uids), action, params)

    async def locate(self, folder: str, message_id: str) -> int | None:
        """Find a message's UID in ``folder`` by its Message-ID header."""

        uids = await self._call(
            "imap_locate_failed",
            self._search_sync,
            folder,
            ["HEADER", "Message-ID", message_id],
        )
        return max(uids) if uids else None

    async def list_folders(self) -> list[FolderInfo]:
        """List every folder on the server, sorted by name."""

        return await self._call("imap_list_failed", self._list_folders_sync)

    async def _call(self, event: str, func: Callable[..., T], *args: Any) -> T:
        if self._client is None:
            raise AuthenticationError(
                "IMAP mailbox is not authenticated. Call await ImapMailbox.authenticate() first."
            )
        try:
            return await asyncio.to_thread(func, *args)
        except _REQUEST_ERRORS as exc:
            logger.exception(event, error=str(exc))
            raise ImapError(str(exc)) from exc

    # Synchronous helpers, run in a worker thread.

    def _connect_sync(self) -> IMAPClient:
        ssl_context = None
        if self.settings.imap_ssl or self.settings.imap_starttls:
            ssl_context = ssl.create_default_context()
            if not self.settings.imap_verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        client = IMAPClient(
            self.settings.imap_host,
            port=self.settings.imap_port,
            ssl=self.settings.imap_ssl,
            ssl_context=ssl_context if self.settings.imap_ssl else None,
            timeout=self.settings.imap_timeout,
        )
        client.normalise_times = False
        try:
            if not self.settings.imap_ssl and self.settings.imap_starttls:
                client.starttls(ssl_context)
            client.login(self.account, self._password)
        except BaseException:
            try:
                client.shutdown()
            except OSError:
                pass
            raise
        return client

    def _select(self, folder: str, readonly: bool) -> IMAPClient:
        assert self._client is not None
        # A writable selection also serves reads.
        if self._selected is not None and self._selected[0] == folder and (readonly or not self._selected[1]):
            return self._client
        self._client.select_folder(folder, readonly=readonly)
        self._selected = (folder, readonly)
        return self._client

    def _search_sync(self, folder: str, criteria: list) -> list[int]:
        client = self._select(folder, readonly=True)
        if _needs_charset(criteria):
            return [int(uid) for uid in client.search(criteria, charset="UTF-8")]
        return [int(uid) for uid in client.search(criteria)]

    def _list_folders_sync(self) -> list[FolderInfo]:
        assert self._client is not None
        folders = [
            FolderInfo(name=_text(name), delimiter=_text(delimiter) or None, flags=[_text(f) for f in flags])
            for flags, delimiter, name in self._client.list_folders()
        ]
        return sorted(folders, key=lambda folder: folder.name)

    def _fetch_sync(self, folder: str, uids: list[int], include_body: bool) -> list[MessageHeader]:
        client = self._select(folder, readonly=True)
        items = FETCH_ITEMS_WITH_BODY if include_body else FETCH_ITEMS
        response = client.fetch(uids, items)
        return [fetch_item_to_header(int(uid), data) for uid, data in response.items()]

    def _mutate_sync(
        self,
        folder: str,
        uids: list[int],
        action: ActionType,
        params: MutationParams,
    ) -> list[TargetResult]:
        client = self._select(folder, readonly=False)
        try:
            self._apply(client, uids, action, params)
            return [TargetResult(uid=uid, succeeded=True) for uid in uids]
        except IMAPClientError as exc:
            if len(uids) == 1:
                return [TargetResult(uid=uids[0], succeeded=False, error=str(exc))]
            logger.warning("imap_chunk_failed_retrying_individually", folder=folder, count=len(uids), error=str(exc))

        remaining = uids
        if _removes_from_folder(action, params):
            # Part of the chunk may already have left the folder.
            present = set(client.fetch(uids, ["FLAGS"]).keys())
            remaining = [uid for uid in uids if uid in present]

        results = {uid: TargetResult(uid=uid, succeeded=True) for uid in uids}
        for uid in remaining:
            try:
                self._apply(client, [uid], action, params)
            except IMAPClientError as exc:
                results[uid] = TargetResult(uid=uid, succeeded=False, error=str(exc))
        return [results[uid] for uid in uids]

    def _apply(self, client: IMAPClient, uids: list[int], action: ActionType, params: MutationParams) -> None:
        if action == ActionType.FLAG:
            flag_params = params.flag_params or FlagParams()
            add, remove = _flag_changes(flag_params)
            if add:
                client.add_flags(uids, add)
            if remove:
                client.remove_flags(uids, remove)
            if flag_params.move_to:
                self._move(client, uids, flag_params.move_to)
        elif action == ActionType.COPY:
            client.copy(uids, _require_dest(params))
        elif action == ActionType.DELETE and params.permanent:
            client.delete_messages(uids)
            self._expunge(client, uids)
        else:
            self._move(client, uids, _require_dest(params))

    def _move(self, client: IMAPClient, uids: list[int], dest: str) -> None:
        if client.has_capability("MOVE"):
            client.move(uids, dest)
            return
        client.copy(uids, dest)
        client.delete_messages(uids)
        self._expunge(client, uids)

    def _expunge(self, client: IMAPClient, uids: list[int]) -> None:
        if client.has_capability("UIDPLUS"):
            client.uid_expunge(uids)
        else:
            client.expunge()


def _needs_charset(criteria: Any) -> bool:
    if isinstance(criteria, str):
        return not criteria.isascii()
    if isinstance(criteria, (list, tuple)):
        return any(_needs_charset(item) for item in criteria)
    return False


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return "" if value is None else str(value)


def _flag_changes(params: FlagParams) -> tuple[list[str], list[str]]:
    add: list[str] = []
    remove: list[str] = []
    if params.read is True:
        add.append(SEEN)
    elif params.read is False:
        remove.append(SEEN)
    if params.starred is True:
        add.append(FLAGGED)
    elif params.starred is False:
        remove.append(FLAGGED)
    add.extend(params.labels)
    remove.extend(params.unlabels)
    return add, remove


def _removes_from_folder(action: ActionType, params: MutationParams) -> bool:
    if action == ActionType.COPY:
        return False
    if action == ActionType.FLAG:
        return bool(params.flag_params and params.flag_params.move_to)
    return True


def _require_dest(params: MutationParams) -> str:
    if not params.dest_folder:
        raise ImapError("No destination folder given")
    return params.dest_folder


__all__ = ["ImapMailbox"]
