"""Unit tests for the command-line interface."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
import structlog

from mailtrail import cli


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, fake_mailbox, mock_settings):
    """Run the CLI against the in-memory mailbox instead of a real server."""
    fake_mailbox.authenticate = AsyncMock()
    fake_mailbox.close = AsyncMock()
    monkeypatch.setattr(cli, "get_settings", lambda: mock_settings)
    monkeypatch.setattr(cli, "ImapMailbox", lambda account, password, settings: fake_mailbox)
    monkeypatch.setattr(cli.CredentialStore, "require_secret", lambda self, account: "secret")
    return fake_mailbox


class TestCli:
    def test_parser_requires_command(self) -> None:
        with pytest.raises(SystemExit):
            cli._build_parser().parse_args([])

    def test_move_requires_destination(self) -> None:
        with pytest.raises(SystemExit):
            cli._build_parser().parse_args(["move", "1"])

    def test_query_prints_results(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.add(message_id="<a@x>", subject="Hello world")
        cli_env.add(message_id="<b@x>", subject="Other")

        assert cli.main(["query", "subject:hello"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "Hello world" in out
        assert "Other" not in out
        assert "1 message(s)" in out
        cli_env.authenticate.assert_awaited_once()
        cli_env.close.assert_awaited_once()

    def test_query_error_points_at_position(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["query", "unread:true AND frm:alice"]) == cli.EXIT_QUERY_ERROR

        err = capsys.readouterr().err
        assert "Query error" in err
        assert "  " + " " * 16 + "^" in err

    def test_mark_read_unknown_id(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["mark-read", "99"]) == cli.EXIT_NOT_FOUND
        assert "99" in capsys.readouterr().err
        cli_env.authenticate.assert_not_awaited()

    def test_draft_flow(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.add(message_id="<a@x>", subject="Invoice")
        assert cli.main(["query", "subject:invoice"]) == cli.EXIT_OK

        assert cli.main(["archive", "1", "--draft"]) == cli.EXIT_OK
        assert cli.main(["delete", "1", "--draft"]) == cli.EXIT_DRAFT_CONFLICT
        assert cli.main(["draft", "show"]) == cli.EXIT_OK
        assert "Archive 1 message" in capsys.readouterr().out

        assert cli.main(["draft", "commit"]) == cli.EXIT_OK
        assert cli_env.uid_of("Archive", "<a@x>") is not None
        assert cli_env.uid_of("INBOX", "<a@x>") is None

        assert cli.main(["draft", "show"]) == cli.EXIT_OK
        assert "No draft staged" in capsys.readouterr().out

    def test_read_shows_body(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.add(message_id="<a>", subject="Invoice", body="Please pay by Friday")
        assert cli.main(["query", "subject:invoice"]) == cli.EXIT_OK
        capsys.readouterr()

        assert cli.main(["read", "1"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "Subject: Invoice" in out
        assert "Please pay by Friday" in out
        assert cli.main(["query", "subject:invoice", "--agent-unread"]) == cli.EXIT_OK
        assert "0 message(s)" in capsys.readouterr().out

    def test_read_unknown_id(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["read", "7"]) == cli.EXIT_NOT_FOUND
        assert "7" in capsys.readouterr().err

    def test_folders_json(self, cli_env, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.add("Work")
        cli_env.add("INBOX")

        assert cli.main(["folders", "--json"]) == cli.EXIT_OK

        payload = json.loads(capsys.readouterr().out)
        assert [f["name"] for f in payload] == ["INBOX", "Work"]

    def test_missing_account(self, cli_env, monkeypatch: pytest.MonkeyPatch, mock_settings) -> None:
        settings = mock_settings.model_copy(update={"account": None})
        monkeypatch.setattr(cli, "get_settings", lambda: settings)

        assert cli.main(["cache", "reset"]) == cli.EXIT_ERROR
