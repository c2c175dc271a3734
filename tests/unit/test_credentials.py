"""Unit tests for the keyring-backed credential store."""

from __future__ import annotations

import keyring
import keyring.errors
import pytest

from mailtrail.credentials import CredentialStore
from mailtrail.exceptions import ConfigurationError


class MemoryKeyring:
    def __init__(self) -> None:
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.passwords:
            raise keyring.errors.PasswordDeleteError("not found")
        del self.passwords[(service, username)]


@pytest.fixture
def memory_keyring(monkeypatch: pytest.MonkeyPatch) -> MemoryKeyring:
    backend = MemoryKeyring()
    monkeypatch.setattr(keyring, "get_password", backend.get_password)
    monkeypatch.setattr(keyring, "set_password", backend.set_password)
    monkeypatch.setattr(keyring, "delete_password", backend.delete_password)
    return backend


def test_set_and_get(memory_keyring: MemoryKeyring, mock_settings) -> None:
    store = CredentialStore(mock_settings)

    store.set_secret("me@example.com", "bridge-pass")

    assert store.get_secret("me@example.com") == "bridge-pass"
    assert memory_keyring.passwords == {("mailtrail", "me@example.com"): "bridge-pass"}


def test_require_secret_missing(memory_keyring: MemoryKeyring, mock_settings) -> None:
    with pytest.raises(ConfigurationError):
        CredentialStore(mock_settings).require_secret("me@example.com")


def test_delete(memory_keyring: MemoryKeyring, mock_settings) -> None:
    store = CredentialStore(mock_settings)
    store.set_secret("me@example.com", "x")

    assert store.delete_secret("me@example.com") is True
    assert store.delete_secret("me@example.com") is False


def test_empty_password_rejected(memory_keyring: MemoryKeyring, mock_settings) -> None:
    with pytest.raises(ConfigurationError):
        CredentialStore(mock_settings).set_secret("me@example.com", "")


def test_backend_errors_are_wrapped(monkeypatch: pytest.MonkeyPatch, mock_settings) -> None:
    def fail(*args):
        raise keyring.errors.NoKeyringError("no backend")

    monkeypatch.setattr(keyring, "get_password", fail)

    with pytest.raises(ConfigurationError):
        CredentialStore(mock_settings).get_secret("me@example.com")
