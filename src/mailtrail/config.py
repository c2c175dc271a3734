"""Configuration management for mailtrail.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILTRAIL_ prefix (e.g., MAILTRAIL_IMAP_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILTRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Account / IMAP Configuration
    account: str | None = Field(
        default=None,
        description="Email address of the account to operate on",
    )
    imap_host: str = Field(
        default="127.0.0.1",
        description="IMAP server host",
    )
    imap_port: int = Field(
        default=1143,
        description="IMAP server port",
    )
    imap_ssl: bool = Field(
        default=False,
        description="Use implicit TLS when connecting to the IMAP server",
    )
    imap_starttls: bool = Field(
        default=True,
        description="Upgrade a plain IMAP connection with STARTTLS",
    )
    imap_verify_certificate: bool = Field(
        default=False,
        description=(
            "Verify the server TLS certificate. Local bridges usually present a "
            "self-signed certificate, so this is off by default."
        ),
    )
    imap_timeout: int = Field(
        default=30,
        description="Timeout for IMAP socket operations in seconds",
    )

    keyring_service: str = Field(
        default="mailtrail",
        description="Service name under which account passwords are stored in the system keyring",
    )

    # Local state configuration
    state_db_path: Path = Field(
        default=Path.home() / ".mailtrail" / "state.sqlite3",
        description="Path to the SQLite database holding identities, selections and drafts",
    )
    state_busy_timeout: float = Field(
        default=10.0,
        description="Seconds to wait for a competing process to release the state database",
    )

    # Batch configuration
    batch_size: int = Field(
        default=100,
        ge=1,
        description="Number of messages mutated per IMAP command (move/copy/delete/flag)",
    )
    fetch_batch_size: int = Field(
        default=25,
        ge=1,
        description="Number of messages fetched per IMAP FETCH command",
    )

    # Folder configuration
    default_folder: str = Field(
        default="INBOX",
        description="Folder used when a command does not name one",
    )
    trash_folder: str = Field(
        default="Trash",
        description="Folder receiving non-permanent deletes",
    )
    archive_folder: str = Field(
        default="Archive",
        description="Folder receiving archived messages",
    )

    # Application Configuration
    log_level: str = Field(
        default="WARNING",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    max_retries: int = Field(
        default=3,
        description="Maximum number of retries for failed connection attempts",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
