"""Account passwords stored in the system keyring."""

from __future__ import annotations

import keyring
import keyring.errors
import structlog

from mailtrail.config import Settings
from mailtrail.exceptions import ConfigurationError

logger = structlog.get_logger()


class CredentialStore:
    """Reads and writes IMAP passwords under the configured keyring service."""

    def __init__(self, settings: Settings | None = None) -> None:
        from mailtrail.config import get_settings

        self.settings = settings or get_settings()

    @property
    def service(self) -> str:
        return self.settings.keyring_service

    def get_secret(self, account: str) -> str | None:
        try:
            return keyring.get_password(self.service, account)
        except keyring.errors.KeyringError as exc:
            logger.error("keyring_read_failed", account=account, error=str(exc))
            raise ConfigurationError(f"Cannot read password for {account} from the system keyring: {exc}") from exc

    def set_secret(self, account: str, secret: str) -> None:
        if not secret:
            raise ConfigurationError("Refusing to store an empty password")
        try:
            keyring.set_password(self.service, account, secret)
        except keyring.errors.KeyringError as exc:
            logger.error("keyring_write_failed", account=account, error=str(exc))
            raise ConfigurationError(f"Cannot store password for {account} in the system keyring: {exc}") from exc
        logger.info("keyring_password_stored", account=account, service=self.service)

    def delete_secret(self, account: str) -> bool:
        """Remove the stored password. Returns False when none was stored."""

        try:
            keyring.delete_password(self.service, account)
        except keyring.errors.PasswordDeleteError:
            return False
        except keyring.errors.KeyringError as exc:
            raise ConfigurationError(f"Cannot delete password for {account}: {exc}") from exc
        return True

    def require_secret(self, account: str) -> str:
        """Return the stored password or raise ``ConfigurationError``."""

        secret = self.get_secret(account)
        if not secret:
            raise ConfigurationError(
                f"No password stored for {account}. Run 'mailtrail account set-password' first."
            )
        return secret
