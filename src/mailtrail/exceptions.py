"""Custom exceptions for mailtrail."""

from __future__ import annotations


class MailTrailError(Exception):
    """Base exception for all mailtrail errors."""


class QueryError(MailTrailError):
    """Base exception for query parsing errors.

    Carries the offending token and its 0-based character position so the
    command layer can point at the problem in the original query string.
    """

    def __init__(self, message: str, *, token: str | None = None, position: int | None = None) -> None:
        self.message = message
        self.token = token
        self.position = position
        super().__init__(self._format())

    def _format(self) -> str:
        if self.token is not None and self.position is not None:
            return f"{self.message} (at position {self.position}: {self.token!r})"
        if self.position is not None:
            return f"{self.message} (at position {self.position})"
        return self.message


class QuerySyntaxError(QueryError):
    """Exception raised for malformed query structure."""


class UnknownFieldError(QueryError):
    """Exception raised when a query names a field that is not supported."""


class ValueParseError(QueryError):
    """Exception raised when a field value cannot be parsed (dates, sizes, booleans)."""


class DraftConflictError(MailTrailError):
    """Exception raised when staging a draft while another one is pending."""

    def __init__(self, account: str, existing_action: str | None = None) -> None:
        self.account = account
        self.existing_action = existing_action
        detail = f" ({existing_action})" if existing_action else ""
        super().__init__(
            f"A draft{detail} is already staged for {account}. "
            "Commit or discard it before staging another."
        )


class DraftNotFoundError(MailTrailError):
    """Exception raised when committing or inspecting a draft that does not exist."""


class IdentityNotFoundError(MailTrailError):
    """Exception raised when shadow identities no longer resolve to a message."""

    def __init__(self, shadow_ids: list[int], message: str | None = None) -> None:
        self.shadow_ids = list(shadow_ids)
        ids = ", ".join(str(i) for i in self.shadow_ids)
        super().__init__(message or f"Message no longer available: {ids}")


class BatchValidationError(MailTrailError):
    """Exception raised for invalid batch action parameters."""


class ImapError(MailTrailError):
    """Exception raised for IMAP protocol errors."""


class AuthenticationError(MailTrailError):
    """Exception raised for authentication failures."""


class ConfigurationError(MailTrailError):
    """Exception raised for configuration related errors."""


class StateStoreError(MailTrailError):
    """Exception raised when the local state database fails or is unusable."""
