from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from rich.console import Console
from rich.table import Table

from .client import OpsBoardClient
from .config import Settings, check_base_url, load_settings
from .constants import SORT_KEYS
from .errors import AuthenticationError, BoardError, ConfigError, Result
from .lifecycle import available_transitions
from .logging_setup import configure_logging
from .models import CurrentUser, Draft, Task, TaskDraft, TaskPriority
from .repository import parse_timestamp
from .views import PendingItem

Handler = Callable[[OpsBoardClient, argparse.Namespace], Awaitable[int]]


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _fail(error: BoardError) -> int:
    sys.stderr.write(json.dumps(error.to_dict()) + "\n")
    if isinstance(error, AuthenticationError) or error.status == 401:
        return 2
    return 1


def _finish(result: Result[Any], key: str = "task") -> int:
    if not result.ok:
        return _fail(result.error)
    value = result.value
    _emit({"ok": True, key: value.to_dict() if isinstance(value, (Task, Draft, CurrentUser)) else value})
    return 0


def _deadline(raw: str) -> datetime:
    value = parse_timestamp(raw)
    if value is None:
        raise argparse.ArgumentTypeError(f"expected an ISO 8601 timestamp, got {raw!r}")
    return value


def _task_row(task: Task, kind: str = "") -> dict[str, Any]:
    row = task.to_dict()
    if kind:
        row["pending_kind"] = kind
    return row


def _render_table(tasks: list[Task], kinds: Optional[dict[str, str]] = None) -> None:
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Reward", justify="right")
    table.add_column("Deadline")
    table.add_column("Assignee")
    if kinds:
        table.add_column("Kind")
    for task in tasks:
        row = [
            task.id,
            task.title,
            task.status.value,
            task.priority.value,
            str(task.reward),
            task.deadline.isoformat() if task.deadline else "-",
            task.assignee.name if task.assignee else "-",
        ]
        if kinds:
            row.append(kinds.get(task.id, ""))
        table.add_row(*row)
    Console().print(table)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _login(client: OpsBoardClient, args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    try:
        user = await client.auth.login(args.username, password)
    except BoardError as exc:
        return _fail(exc)
    _emit({"user": user.to_dict()})
    return 0


async def _logout(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.auth.logout()
    _emit({"ok": True})
    return 0


async def _whoami(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.load_current_user()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    _emit({"user": client.context.user.to_dict()})
    return 0


async def _tasks(client: OpsBoardClient, args: argparse.Namespace) -> int:
    board = client.board
    board.keyword = args.keyword or ""
    board.sort_key = args.sort
    await board.initialize()
    if board.last_error is not None:
        return _fail(board.last_error)

    kinds: dict[str, str] = {}
    if args.view == "available":
        tasks = board.available
    elif args.view == "pending":
        pending: list[PendingItem] = board.my_pending
        tasks = [item.task for item in pending]
        kinds = {item.task.id: item.kind for item in pending}
    elif args.view == "completed":
        tasks = board.my_completed
    else:
        tasks = board.filtered

    if args.json:
        payload: dict[str, Any] = {
            "view": args.view,
            "total": board.total_tasks,
            "tasks": [
                dict(_task_row(t, kinds.get(t.id, "")), actions=[a.value for a in available_transitions(t, board.user)])
                for t in tasks
            ],
        }
        if args.view == "completed":
            payload["earned_total"] = board.earned_total
        _emit(payload)
    else:
        _render_table(tasks, kinds or None)
    return 0


def _transition(name: str) -> Handler:
    async def handler(client: OpsBoardClient, args: argparse.Namespace) -> int:
        board = client.board
        # Narrow the listing to the target so it is present locally.
        board.keyword = args.task_id
        await board.initialize()
        if board.last_error is not None:
            return _fail(board.last_error)
        action = getattr(client.engine, name)
        return _finish(await action(args.task_id))

    return handler


async def _publish(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.load_current_user()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    draft = TaskDraft(
        title=args.title,
        description_rich=args.description,
        reward=args.reward,
        priority=TaskPriority(args.priority),
        deadline=args.deadline,
        tags=tuple(t for t in (args.tags or "").split(",")),
    )
    if args.draft:
        return _finish(await client.engine.save_draft(draft), key="draft")
    return _finish(await client.engine.publish(draft))


async def _drafts(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.initialize()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    drafts = client.board.drafts
    if args.json:
        _emit({"drafts": [d.to_dict() for d in drafts]})
        return 0
    table = Table(title="Drafts")
    for column in ("ID", "Title", "Priority", "Reward", "Updated"):
        table.add_column(column)
    for draft in drafts:
        table.add_row(
            draft.id,
            draft.title,
            draft.priority.value,
            str(draft.reward),
            draft.updated_at.isoformat() if draft.updated_at else "-",
        )
    Console().print(table)
    return 0


async def _publish_draft(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.initialize()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    return _finish(await client.engine.publish_draft(args.draft_id))


async def _profile(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.load_current_user()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    user = client.context.user
    result = await client.profile.update_profile(
        args.display_name if args.display_name is not None else user.display_name,
        args.headline if args.headline is not None else user.headline,
        args.bio if args.bio is not None else user.bio,
    )
    return _finish(result, key="user")


async def _change_password(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.load_current_user()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    current = args.current if args.current is not None else getpass.getpass("Current password: ")
    new = args.new if args.new is not None else getpass.getpass("New password: ")
    return _finish(await client.profile.change_password(current, new), key="result")


async def _accounts(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.initialize()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    accounts = client.board.accounts
    if args.json:
        _emit({"admin_count": client.board.admin_count, "accounts": [a.to_dict() for a in accounts]})
        return 0
    table = Table(title=f"Accounts ({client.board.admin_count} admin)")
    for column in ("ID", "Name", "Role", "Email", "Teams"):
        table.add_column(column)
    for account in accounts:
        table.add_row(account.id, account.display_name, account.role.value, account.email, ", ".join(account.teams))
    Console().print(table)
    return 0


async def _toggle_admin(client: OpsBoardClient, args: argparse.Namespace) -> int:
    await client.board.initialize()
    if client.board.last_error is not None:
        return _fail(client.board.last_error)
    role = await client.accounts.toggle_admin(args.account_id)
    _emit({"account_id": args.account_id, "role": role.value})
    return 0


def _serve_dev(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'opsboard[server]'\n")
        return 1
    from .devserver import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="opsboard - operations task board CLI")
    parser.add_argument("--base-url", default=None, help="Backend origin (default: from config)")
    parser.add_argument("--state-dir", default=None, help="Directory for config and credentials")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Sign in and store the token pair")
    login.add_argument("username")
    login.add_argument("--password", default=None)
    login.set_defaults(handler=_login)

    logout = subparsers.add_parser("logout", help="Sign out and forget the token pair")
    logout.set_defaults(handler=_logout)

    whoami = subparsers.add_parser("whoami", help="Show the signed-in account")
    whoami.set_defaults(handler=_whoami)

    tasks = subparsers.add_parser("tasks", help="List tasks")
    tasks.add_argument("--keyword", default="")
    tasks.add_argument("--sort", default="priority", choices=list(SORT_KEYS))
    tasks.add_argument("--view", default="all", choices=["all", "available", "pending", "completed"])
    tasks.add_argument("--json", action="store_true")
    tasks.set_defaults(handler=_tasks)

    for name, help_text in (
        ("claim", "Claim an available task"),
        ("release", "Hand a claimed task back"),
        ("submit", "Submit a claimed task for review"),
        ("verify", "Accept a submission"),
        ("reject", "Send a submission back to its assignee"),
        ("delete", "Delete an open task (admin)"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("task_id")
        sub.set_defaults(handler=_transition(name))

    publish = subparsers.add_parser("publish", help="Publish a new task (admin)")
    publish.add_argument("--title", required=True)
    publish.add_argument("--description", required=True)
    publish.add_argument("--reward", type=int, default=0)
    publish.add_argument("--deadline", default=None, type=_deadline, help="ISO 8601 timestamp")
    publish.add_argument("--tags", default="", help="Comma-separated tags")
    publish.add_argument("--priority", default="medium", choices=[p.value for p in TaskPriority])
    publish.add_argument("--draft", action="store_true", help="Save unpublished")
    publish.set_defaults(handler=_publish)

    drafts = subparsers.add_parser("drafts", help="List saved drafts (admin)")
    drafts.add_argument("--json", action="store_true")
    drafts.set_defaults(handler=_drafts)

    publish_draft = subparsers.add_parser("publish-draft", help="Publish a saved draft (admin)")
    publish_draft.add_argument("draft_id")
    publish_draft.set_defaults(handler=_publish_draft)

    profile = subparsers.add_parser("profile", help="Edit your display name, headline or bio")
    profile.add_argument("--display-name", default=None)
    profile.add_argument("--headline", default=None)
    profile.add_argument("--bio", default=None)
    profile.set_defaults(handler=_profile)

    password = subparsers.add_parser("change-password", help="Change your password")
    password.add_argument("--current", default=None)
    password.add_argument("--new", default=None)
    password.set_defaults(handler=_change_password)

    accounts = subparsers.add_parser("accounts", help="List accounts (admin)")
    accounts.add_argument("--json", action="store_true")
    accounts.set_defaults(handler=_accounts)

    toggle = subparsers.add_parser("toggle-admin", help="Grant or revoke admin for an account")
    toggle.add_argument("account_id")
    toggle.set_defaults(handler=_toggle_admin)

    serve = subparsers.add_parser("serve-dev", help="Run the in-memory development backend")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", default=8080, type=int)
    serve.set_defaults(func=_serve_dev)

    return parser


def _settings(args: argparse.Namespace) -> Settings:
    state_dir = Path(args.state_dir).expanduser() if args.state_dir else None
    settings = load_settings(state_dir)
    return settings.with_overrides(
        base_url=check_base_url(args.base_url) if args.base_url else None,
        log_level=args.log_level.upper() if args.log_level else None,
    )


async def _run(handler: Handler, settings: Settings, args: argparse.Namespace,
               transport: Optional[httpx.AsyncBaseTransport]) -> int:
    async with OpsBoardClient(settings, transport=transport) as client:
        return await handler(client, args)


def main(argv: list[str] | None = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings(args)
    except ConfigError as exc:
        sys.stderr.write(json.dumps(exc.to_dict()) + "\n")
        return 1
    configure_logging(settings.log_level, settings.state_dir if settings.log_to_file else None)

    func = getattr(args, "func", None)
    if func is not None:
        return int(func(args) or 0)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1
    return asyncio.run(_run(handler, settings, args, transport))


if __name__ == "__main__":
    raise SystemExit(main())
