"""Command-line interface for mailtrail.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from mailtrail import __version__
from mailtrail.config import Settings, get_settings
from mailtrail.credentials import CredentialStore
from mailtrail.engine import MailEngine
from mailtrail.exceptions import (
    ConfigurationError,
    DraftConflictError,
    IdentityNotFoundError,
    MailTrailError,
    QueryError,
)
from mailtrail.imap import ImapMailbox
from mailtrail.models import ActionType, BatchOutcome, Draft, FlagParams, ResolvedMessage
from mailtrail.state import StateDatabase

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_QUERY_ERROR = 2
EXIT_DRAFT_CONFLICT = 3
EXIT_NOT_FOUND = 4

Handler = Callable[[MailEngine, str, argparse.Namespace], Awaitable[int]]


def _add_action_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("ids", nargs="*", type=int, help="Message ids as shown by 'query'")
    parser.add_argument("--selection", action="store_true", help="Act on the current selection")
    parser.add_argument("--draft", action="store_true", help="Stage the action as a draft instead of applying it")
    parser.add_argument(
        "--keep-selection",
        action="store_true",
        help="Keep the selection after a successful action on it",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailtrail", description="Query and batch-edit an IMAP mailbox")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--account", default=None, help="Account email (default: settings account)")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite state database (default: settings state_db_path)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    query_parser = subparsers.add_parser("query", help="Search a folder with a Gmail-style query")
    query_parser.add_argument("query", help='Query, e.g. \'from:github.com AND unread:true\'')
    query_parser.add_argument("--folder", default=None, help="Folder to search (default: settings default_folder)")
    query_parser.add_argument("--limit", type=int, default=None, help="Maximum number of results")
    query_parser.add_argument("--select", action="store_true", help="Add the results to the selection")
    query_parser.add_argument(
        "--agent-unread",
        action="store_true",
        help="Only show messages not yet marked as read by the agent",
    )
    query_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    select_parser = subparsers.add_parser("select", help="Manage the selection")
    select_sub = select_parser.add_subparsers(dest="select_command", required=True)
    select_add = select_sub.add_parser("add", help="Add messages by id")
    select_add.add_argument("ids", nargs="+", type=int)
    select_last = select_sub.add_parser("last", help="Add the last query result of a folder")
    select_last.add_argument("--folder", default=None)
    select_remove = select_sub.add_parser("remove", help="Remove messages by id")
    select_remove.add_argument("ids", nargs="+", type=int)
    select_list = select_sub.add_parser("list", help="Show the selection")
    select_list.add_argument("--json", action="store_true")
    select_clear = select_sub.add_parser("clear", help="Empty the selection")
    select_clear.add_argument("--folder", default=None)

    flag_parser = subparsers.add_parser("flag", help="Change flags and labels")
    _add_action_options(flag_parser)
    read_group = flag_parser.add_mutually_exclusive_group()
    read_group.add_argument("--read", dest="read", action="store_const", const=True, default=None)
    read_group.add_argument("--unread", dest="read", action="store_const", const=False)
    star_group = flag_parser.add_mutually_exclusive_group()
    star_group.add_argument("--star", dest="starred", action="store_const", const=True, default=None)
    star_group.add_argument("--unstar", dest="starred", action="store_const", const=False)
    flag_parser.add_argument("--label", dest="labels", action="append", default=[], help="Keyword to add")
    flag_parser.add_argument("--unlabel", dest="unlabels", action="append", default=[], help="Keyword to remove")
    flag_parser.add_argument("--move-to", default=None, help="Folder to move to after flagging")

    for name, help_text in (("move", "Move messages to a folder"), ("copy", "Copy messages to a folder")):
        p = subparsers.add_parser(name, help=help_text)
        _add_action_options(p)
        p.add_argument("--to", dest="dest_folder", required=True, help="Destination folder")

    delete_parser = subparsers.add_parser("delete", help="Move messages to trash")
    _add_action_options(delete_parser)
    delete_parser.add_argument("--permanent", action="store_true", help="Expunge instead of moving to trash")

    archive_parser = subparsers.add_parser("archive", help="Move messages to the archive folder")
    _add_action_options(archive_parser)

    draft_parser = subparsers.add_parser("draft", help="Inspect, discard or commit the staged draft")
    draft_sub = draft_parser.add_subparsers(dest="draft_command", required=True)
    draft_show = draft_sub.add_parser("show")
    draft_show.add_argument("--json", action="store_true")
    draft_sub.add_parser("discard")
    draft_sub.add_parser("commit")

    read_parser = subparsers.add_parser("read", help="Show a message with its body and mark it read by the agent")
    read_parser.add_argument("id", type=int)
    read_parser.add_argument("--mark-seen", action="store_true", help="Also set the \\Seen flag on the server")
    read_parser.add_argument("--json", action="store_true")

    folders_parser = subparsers.add_parser("folders", help="List the folders of the mailbox")
    folders_parser.add_argument("--json", action="store_true")

    mark_read = subparsers.add_parser("mark-read", help="Mark messages as processed by the agent")
    mark_read.add_argument("ids", nargs="+", type=int)

    account_parser = subparsers.add_parser("account", help="Manage account credentials")
    account_sub = account_parser.add_subparsers(dest="account_command", required=True)
    set_password = account_sub.add_parser("set-password", help="Store the IMAP password in the system keyring")
    set_password.add_argument("--stdin", action="store_true", help="Read the password from stdin")
    account_sub.add_parser("check", help="Log in to verify the stored credentials")

    cache_parser = subparsers.add_parser("cache", help="Manage the local identity cache")
    cache_sub = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_reset = cache_sub.add_parser("reset", help="Forget all message identities")
    cache_reset.add_argument("--all-accounts", action="store_true")

    return parser


def _format_message(m: ResolvedMessage) -> str:
    unread = "*" if m.unread else " "
    agent = "A" if m.agent_read else " "
    date_part = m.date.date().isoformat() if m.date else "(no date)"
    sender = m.sender or "(unknown sender)"
    return f"[{m.shadow_id}]\t{unread}{agent}\t{date_part}\t{sender}\t{m.subject}"


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_draft(draft: Draft) -> None:
    print(f"Draft for {draft.account}: {draft.describe()}")
    for target in draft.targets:
        ident = target.shadow_id if target.shadow_id is not None else "-"
        line = f"  [{ident}]\t{target.folder}\tuid {target.uid}\t{target.outcome.value}"
        if target.error:
            line += f"\t{target.error}"
        print(line)


def _print_outcome(outcome: BatchOutcome) -> int:
    print(f"{outcome.action.value}: {len(outcome.succeeded)} succeeded, {len(outcome.failed)} failed")
    for target in outcome.failed:
        print(f"  failed [{target.shadow_id}] {target.folder} uid {target.uid}: {target.error}", file=sys.stderr)
    if outcome.committed:
        return EXIT_OK
    print(
        "The draft was kept. Run 'mailtrail draft commit' to retry the failed messages "
        "or 'mailtrail draft discard' to drop it.",
        file=sys.stderr,
    )
    return EXIT_ERROR


async def _cmd_query(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    folder = args.folder or engine.settings.default_folder
    results = await engine.run_query_string(
        account,
        folder,
        args.query,
        limit=args.limit,
        agent_unread_only=args.agent_unread,
        select=args.select,
    )
    if args.json:
        _print_json([m.model_dump(mode="json") for m in results])
    else:
        for m in results:
            print(_format_message(m))
        print(f"{len(results)} message(s)" + (" added to selection" if args.select and results else ""))
    return EXIT_OK


async def _cmd_select(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    if args.select_command == "add":
        count = await engine.select_ids(account, args.ids)
        print(f"Selected {count} message(s); {engine.ledger.selection_count(account)} in selection")
    elif args.select_command == "last":
        count = engine.select_last(account, args.folder)
        print(f"Selected {count} message(s); {engine.ledger.selection_count(account)} in selection")
    elif args.select_command == "remove":
        count = engine.deselect(account, args.ids)
        print(f"Removed {count} message(s) from selection")
    elif args.select_command == "clear":
        count = engine.clear_selection(account, args.folder)
        print(f"Cleared {count} message(s) from selection")
    else:
        entries = engine.selection(account)
        if args.json:
            _print_json([e.model_dump(mode="json") for e in entries])
        else:
            for e in entries:
                ident = e.shadow_id if e.shadow_id is not None else "-"
                print(f"[{ident}]\t{e.folder}\tuid {e.uid}\t{e.subject or ''}")
            print(f"{len(entries)} message(s) selected")
    return EXIT_OK


async def _cmd_action(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    action = ActionType(args.command)
    params = None
    if action == ActionType.FLAG:
        params = FlagParams(
            read=args.read,
            starred=args.starred,
            labels=args.labels,
            unlabels=args.unlabels,
            move_to=args.move_to,
        )
    kwargs = dict(
        shadow_ids=args.ids,
        use_selection=args.selection,
        params=params,
        dest_folder=getattr(args, "dest_folder", None),
        permanent=getattr(args, "permanent", False),
    )

    if args.draft:
        draft = await engine.stage_batch(account, action, **kwargs)
        _print_draft(draft)
        print("Run 'mailtrail draft commit' to apply it or 'mailtrail draft discard' to drop it.")
        return EXIT_OK

    outcome = await engine.execute_batch(account, action, keep_selection=args.keep_selection, **kwargs)
    return _print_outcome(outcome)


async def _cmd_draft(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    if args.draft_command == "commit":
        return _print_outcome(await engine.commit_batch(account))

    if args.draft_command == "discard":
        if engine.discard_batch(account):
            print("Draft discarded")
        else:
            print("No draft staged")
        return EXIT_OK

    draft = engine.get_draft(account)
    if draft is None:
        print("No draft staged")
    elif args.json:
        print(draft.model_dump_json(indent=2))
    else:
        _print_draft(draft)
    return EXIT_OK


async def _cmd_read(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    message = await engine.read_message(args.id, mark_seen=args.mark_seen)
    if args.json:
        _print_json(message.model_dump(mode="json"))
        return EXIT_OK

    print(f"Id:      {message.shadow_id}")
    print(f"Folder:  {message.folder}")
    print(f"From:    {message.sender or '(unknown sender)'}")
    print(f"Date:    {message.date.isoformat() if message.date else '(no date)'}")
    print(f"Subject: {message.subject}")
    if message.has_attachment:
        print("Attachments: yes")
    print()
    print(message.body or "")
    return EXIT_OK


async def _cmd_folders(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    folders = await engine.list_folders()
    if args.json:
        _print_json([f.model_dump(mode="json") for f in folders])
    else:
        for folder in folders:
            print(folder.name)
    return EXIT_OK


async def _cmd_mark_read(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    count = engine.mark_agent_read(args.ids)
    print(f"Marked {count} message(s) as read by the agent")
    return EXIT_OK


async def _cmd_account_check(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    print(f"Logged in to {engine.settings.imap_host}:{engine.settings.imap_port} as {account}")
    return EXIT_OK


async def _cmd_cache_reset(engine: MailEngine, account: str, args: argparse.Namespace) -> int:
    count = engine.reset_cache(None if args.all_accounts else account)
    print(f"Removed {count} cached message identities")
    return EXIT_OK


def _resolve_account(args: argparse.Namespace, settings: Settings) -> str:
    account = args.account or settings.account
    if not account:
        raise ConfigurationError("No account configured. Pass --account or set MAILTRAIL_ACCOUNT.")
    return account


def _cmd_set_password(args: argparse.Namespace, settings: Settings) -> int:
    account = _resolve_account(args, settings)
    if args.stdin:
        secret = sys.stdin.readline().rstrip("\n")
    else:
        secret = getpass.getpass(f"IMAP password for {account}: ")
    CredentialStore(settings).set_secret(account, secret)
    print(f"Password stored for {account}")
    return EXIT_OK


async def _run(handler: Handler, args: argparse.Namespace, settings: Settings, *, remote: bool) -> int:
    account = _resolve_account(args, settings)

    db = StateDatabase(args.db or settings.state_db_path, settings.state_busy_timeout)
    db.initialize()

    password = CredentialStore(settings).require_secret(account) if remote else None
    mailbox = ImapMailbox(account, password, settings)
    engine = MailEngine(mailbox, db, settings)

    try:
        if remote:
            await mailbox.authenticate()
        return await handler(engine, account, args)
    finally:
        await mailbox.close()


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    command = args.command

    if command == "account" and args.account_command == "set-password":
        return _cmd_set_password(args, settings)

    if command == "query":
        return asyncio.run(_run(_cmd_query, args, settings, remote=True))
    if command == "select":
        return asyncio.run(_run(_cmd_select, args, settings, remote=args.select_command == "add"))
    if command in {a.value for a in ActionType}:
        return asyncio.run(_run(_cmd_action, args, settings, remote=True))
    if command == "draft":
        return asyncio.run(_run(_cmd_draft, args, settings, remote=args.draft_command == "commit"))
    if command == "read":
        return asyncio.run(_run(_cmd_read, args, settings, remote=True))
    if command == "folders":
        return asyncio.run(_run(_cmd_folders, args, settings, remote=True))
    if command == "mark-read":
        return asyncio.run(_run(_cmd_mark_read, args, settings, remote=False))
    if command == "account":
        return asyncio.run(_run(_cmd_account_check, args, settings, remote=True))
    if command == "cache":
        return asyncio.run(_run(_cmd_cache_reset, args, settings, remote=False))

    logger.error("unknown_command", command=command)
    return EXIT_QUERY_ERROR


def _print_query_error(exc: QueryError, query: str | None) -> None:
    print(f"Query error: {exc}", file=sys.stderr)
    if query and exc.position is not None:
        print(f"  {query}", file=sys.stderr)
        print(f"  {' ' * exc.position}^", file=sys.stderr)


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailtrail CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    settings = get_settings()
    level_name = "DEBUG" if parsed.debug or settings.debug else settings.log_level.upper()

    # Configure logging. Logs go to stderr so stdout stays machine-readable.
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.WARNING)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    logger.info("mailtrail_started", version=__version__, command=parsed.command)

    try:
        return _dispatch(parsed, settings)
    except QueryError as exc:
        _print_query_error(exc, getattr(parsed, "query", None))
        return EXIT_QUERY_ERROR
    except DraftConflictError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_DRAFT_CONFLICT
    except IdentityNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except MailTrailError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
