"""Persistent local state: identities, selections, query history and drafts."""

from mailtrail.state.database import SCHEMA_VERSION, StateDatabase
from mailtrail.state.drafts import DraftStore
from mailtrail.state.identity import IdentityStore
from mailtrail.state.ledger import QueryHistory, SelectionLedger

__all__ = [
    "DraftStore",
    "IdentityStore",
    "QueryHistory",
    "SCHEMA_VERSION",
    "SelectionLedger",
    "StateDatabase",
]
