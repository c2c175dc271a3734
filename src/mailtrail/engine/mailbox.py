"""Remote mailbox capability consumed by the engine."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Iterator, Sequence
from typing import Protocol, runtime_checkable

from mailtrail.models import ActionType, DraftTarget, FolderInfo, MessageHeader, MutationParams, TargetResult
from mailtrail.utils import chunked


@runtime_checkable
class MailboxProtocol(Protocol):
    """What the engine needs from a remote mailbox.

    Implementations raise ``ImapError`` (or ``AuthenticationError``) for
    remote failures. ``mutate`` reports per-UID outcomes instead of raising
    when only some UIDs fail.
    """

    @property
    def search_fields(self) -> Collection[str]:
        """Query fields the remote can search natively."""
        ...

    async def search(self, folder: str, criteria: list) -> list[int]:
        ...

    async def fetch_headers(
        self,
        folder: str,
        uids: Sequence[int],
        include_body: bool = False,
    ) -> list[MessageHeader]:
        ...

    async def mutate(
        self,
        folder: str,
        uids: Sequence[int],
        action: ActionType,
        params: MutationParams,
    ) -> list[TargetResult]:
        ...

    async def locate(self, folder: str, message_id: str) -> int | None:
        """Return the UID of ``message_id`` in ``folder``, if present."""
        ...

    async def list_folders(self) -> list[FolderInfo]:
        ...


def group_by_folder(targets: Iterable[DraftTarget]) -> dict[str, list[DraftTarget]]:
    """Group targets by folder, keeping first-seen folder order."""

    groups: dict[str, list[DraftTarget]] = {}
    for target in targets:
        groups.setdefault(target.folder, []).append(target)
    return groups


def iter_chunks(targets: Iterable[DraftTarget], batch_size: int) -> Iterator[tuple[str, list[DraftTarget]]]:
    """Yield ``(folder, chunk)`` pairs holding at most ``batch_size`` targets."""

    for folder, group in group_by_folder(targets).items():
        for chunk in chunked(group, batch_size):
            yield folder, chunk


def newest_first(uids: Iterable[int]) -> list[int]:
    return sorted(set(uids), reverse=True)
