"""Data models for mailtrail.

This module contains Pydantic models for data validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from mailtrail.models.message_header import (
    MessageHeader,
    MessageLocation,
    MessageRecord,
    ResolvedMessage,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    """Batch action enumeration."""

    FLAG = "flag"
    MOVE = "move"
    COPY = "copy"
    DELETE = "delete"
    ARCHIVE = "archive"


class TargetOutcome(str, Enum):
    """Per-message outcome of a batch commit."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FlagParams(BaseModel):
    """Flag changes applied by a ``flag`` batch action."""

    read: Optional[bool] = Field(default=None, description="True marks read, False marks unread")
    starred: Optional[bool] = Field(default=None, description="True stars, False unstars")
    labels: list[str] = Field(default_factory=list, description="Keywords to add")
    unlabels: list[str] = Field(default_factory=list, description="Keywords to remove")
    move_to: Optional[str] = Field(default=None, description="Folder to move to after flagging")

    def has_any_action(self) -> bool:
        return (
            self.read is not None
            or self.starred is not None
            or bool(self.labels)
            or bool(self.unlabels)
            or self.move_to is not None
        )

    def describe(self) -> list[str]:
        actions: list[str] = []
        if self.read is True:
            actions.append("mark as read")
        elif self.read is False:
            actions.append("mark as unread")
        if self.starred is True:
            actions.append("star")
        elif self.starred is False:
            actions.append("unstar")
        actions.extend(f"add label '{label}'" for label in self.labels)
        actions.extend(f"remove label '{label}'" for label in self.unlabels)
        if self.move_to:
            actions.append(f"move to '{self.move_to}'")
        return actions


class SelectionEntry(BaseModel):
    """A message reference held by the selection or by the last query generation."""

    account: str
    folder: str
    uid: int
    shadow_id: Optional[int] = None
    message_id: Optional[str] = None
    subject: Optional[str] = None


class DraftTarget(BaseModel):
    """One message a draft applies to, with its commit outcome."""

    shadow_id: Optional[int] = Field(default=None, description="Shadow identity, when known")
    folder: str = Field(description="Folder the message was resolved to at staging time")
    uid: int = Field(description="UID the message was resolved to at staging time")
    outcome: TargetOutcome = Field(default=TargetOutcome.PENDING)
    error: Optional[str] = Field(default=None, description="Remote error for failed targets")


class Draft(BaseModel):
    """A staged, not yet applied batch mutation for one account."""

    id: Optional[int] = Field(default=None, description="Row id assigned when the draft is staged")
    account: str
    action: ActionType
    folder: str = Field(description="Source folder label (comma-joined when targets span folders)")
    targets: list[DraftTarget] = Field(default_factory=list)
    flag_params: Optional[FlagParams] = None
    dest_folder: Optional[str] = None
    permanent: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def pending_targets(self) -> list[DraftTarget]:
        return [t for t in self.targets if t.outcome != TargetOutcome.SUCCEEDED]

    @property
    def is_partial(self) -> bool:
        """True once a commit attempt has recorded at least one outcome."""
        return any(t.outcome != TargetOutcome.PENDING for t in self.targets)

    def describe(self) -> str:
        count = len(self.targets)
        msgs = "message" if count == 1 else "messages"

        if self.action == ActionType.FLAG:
            actions = self.flag_params.describe() if self.flag_params else []
            if not actions:
                return f"Flag {count} {msgs} (no flag changes specified)"
            return f"{', '.join(actions)} on {count} {msgs}"
        if self.action == ActionType.MOVE:
            return f"Move {count} {msgs} from '{self.folder}' to '{self.dest_folder}'"
        if self.action == ActionType.COPY:
            return f"Copy {count} {msgs} from '{self.folder}' to '{self.dest_folder}'"
        if self.action == ActionType.DELETE:
            if self.permanent:
                return f"Permanently delete {count} {msgs} from '{self.folder}'"
            return f"Move {count} {msgs} from '{self.folder}' to '{self.dest_folder}'"
        return f"Archive {count} {msgs} from '{self.folder}' to '{self.dest_folder}'"


class MutationParams(BaseModel):
    """Parameters passed to the mailbox for one mutate call."""

    flag_params: Optional[FlagParams] = None
    dest_folder: Optional[str] = Field(default=None, description="Resolved destination for move/copy/archive/trash")
    permanent: bool = False


class FolderInfo(BaseModel):
    """A mailbox folder as reported by LIST."""

    name: str
    delimiter: Optional[str] = None
    flags: list[str] = Field(default_factory=list, description="LIST attributes such as \\Noselect or \\Trash")


class TargetResult(BaseModel):
    """Outcome reported by the mailbox for a single UID of a mutate call."""

    uid: int
    succeeded: bool
    error: Optional[str] = None


class BatchOutcome(BaseModel):
    """Result of committing a draft."""

    account: str
    action: ActionType
    targets: list[DraftTarget] = Field(default_factory=list)
    committed: bool = Field(description="True when every target succeeded and the draft was cleared")

    @property
    def succeeded(self) -> list[DraftTarget]:
        return [t for t in self.targets if t.outcome == TargetOutcome.SUCCEEDED]

    @property
    def failed(self) -> list[DraftTarget]:
        return [t for t in self.targets if t.outcome == TargetOutcome.FAILED]

    @property
    def is_partial(self) -> bool:
        return not self.committed and bool(self.succeeded)


__all__ = [
    "ActionType",
    "BatchOutcome",
    "Draft",
    "DraftTarget",
    "FlagParams",
    "FolderInfo",
    "MessageHeader",
    "MessageLocation",
    "MessageRecord",
    "MutationParams",
    "ResolvedMessage",
    "SelectionEntry",
    "TargetOutcome",
    "TargetResult",
]
