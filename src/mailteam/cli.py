from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List

from . import __version__
from .client import AgentOptions, ask
from .contracts.v1 import InboxMessage
from .daemon.controller import TeamController
from .kernel.errors import MailteamError, NotFound, StorageError
from .kernel.mailbox import FileMailbox
from .kernel.settings import ControllerSettings, load_settings, save_settings, settings_path
from .kernel.tasks import TaskStore
from .kernel.team import CONTROLLER_NAME, TeamStore, validate_name
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    ctrl = TeamController(claude_binary=args.binary or None)
    result = ctrl.verify_compatibility()
    out: Dict[str, Any] = {"binary": ctrl.claude_binary, "compatible": result.compatible}
    if result.version:
        out["version"] = result.version
    if result.error:
        out["error"] = result.error
    _print_json({"ok": result.compatible, "result": out})
    return 0 if result.compatible else 1


def cmd_inbox(args: argparse.Namespace) -> int:
    try:
        entries = FileMailbox().read_all(args.team, args.agent)
    except NotFound as e:
        _print_json(_error("mailbox_not_found", str(e)))
        return 2
    except StorageError as e:
        _print_json(_error("mailbox_unreadable", str(e)))
        return 1
    except ValueError as e:
        _print_json(_error("invalid_name", str(e)))
        return 2
    if args.unread:
        entries = [m for m in entries if not m.read]
    _print_json({"ok": True, "result": {"messages": [m.to_wire() for m in entries]}})
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    team = TeamStore(args.team)
    if not team.exists():
        _print_json(_error("team_not_found", f"team not found: {args.team}"))
        return 2
    try:
        agent = validate_name(args.agent)
        sender = validate_name(args.sender)
    except ValueError as e:
        _print_json(_error("invalid_name", str(e)))
        return 2
    msg = InboxMessage(from_=sender, text=args.text, summary=args.summary or None)
    try:
        FileMailbox().write(team.team_name, agent, msg)
    except StorageError as e:
        _print_json(_error("mailbox_unreadable", str(e)))
        return 1
    _print_json({"ok": True, "result": {"message": msg.to_wire()}})
    return 0


def cmd_tasks(args: argparse.Namespace) -> int:
    tasks = TaskStore(args.team).list()
    _print_json({"ok": True, "result": {"tasks": [t.to_wire() for t in tasks]}})
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    opts = AgentOptions(model=args.model or None, cwd=args.cwd or None, permissions=args.permissions or None)
    try:
        answer = ask(args.prompt, opts, timeout=float(args.timeout))
    except (MailteamError, TimeoutError) as e:
        _print_json(_error(type(e).__name__, str(e)))
        return 1
    print(answer)
    return 0


def _parse_assignments(items: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected KEY=VALUE, got {item!r}")
        out[key.strip()] = value
    return out


def cmd_config(args: argparse.Namespace) -> int:
    settings = load_settings()
    if args.set:
        try:
            patch = _parse_assignments(args.set)
        except ValueError as e:
            _print_json(_error("invalid_argument", str(e)))
            return 2
        known = set(ControllerSettings().to_dict())
        unknown = sorted(k for k in patch if k not in known or k == "env")
        if unknown:
            _print_json(_error("unknown_setting", f"cannot set: {', '.join(unknown)}"))
            return 2
        doc = settings.to_dict()
        doc.update(patch)
        if "ready_on_spawn" in patch:
            doc["ready_on_spawn"] = str(patch["ready_on_spawn"]).strip().lower() in ("1", "true", "yes", "on")
        settings = ControllerSettings.from_dict(doc)
        save_settings(settings)
    _print_json({"ok": True, "result": {"path": str(settings_path()), "settings": settings.to_dict()}})
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mailteam", description="Drive CLI worker agents through file mailboxes")
    p.add_argument("--log-level", default="", help="Log level (default: from settings)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_version = sub.add_parser("version", help="Show version")
    p_version.set_defaults(func=cmd_version)

    p_check = sub.add_parser("check", help="Verify the worker binary answers --version")
    p_check.add_argument("--binary", default="", help="Worker binary (default: from settings)")
    p_check.set_defaults(func=cmd_check)

    p_inbox = sub.add_parser("inbox", help="Print an agent's mailbox")
    p_inbox.add_argument("team", help="Team name")
    p_inbox.add_argument("agent", help="Agent name")
    p_inbox.add_argument("--unread", action="store_true", help="Only entries not yet read (does not mark them)")
    p_inbox.set_defaults(func=cmd_inbox)

    p_send = sub.add_parser("send", help="Append a message to an agent's mailbox")
    p_send.add_argument("team", help="Team name")
    p_send.add_argument("agent", help="Recipient agent name")
    p_send.add_argument("text", help="Message text")
    p_send.add_argument("--from", dest="sender", default=CONTROLLER_NAME, help="Sender name (default: controller)")
    p_send.add_argument("--summary", default="", help="Short summary")
    p_send.set_defaults(func=cmd_send)

    p_tasks = sub.add_parser("tasks", help="List a team's tasks")
    p_tasks.add_argument("team", help="Team name")
    p_tasks.set_defaults(func=cmd_tasks)

    p_ask = sub.add_parser("ask", help="Spawn one agent, ask once, print the answer")
    p_ask.add_argument("prompt", help="Question")
    p_ask.add_argument("--model", default="", help="Model name or id")
    p_ask.add_argument("--cwd", default="", help="Working directory for the agent")
    p_ask.add_argument("--permissions", default="", choices=["", "full", "edit", "plan", "ask"], help="Permission preset")
    p_ask.add_argument("--timeout", type=float, default=120.0, help="Seconds to wait for the answer")
    p_ask.set_defaults(func=cmd_ask)

    p_config = sub.add_parser("config", help="Show or change settings")
    p_config.add_argument("--set", action="append", default=[], metavar="KEY=VALUE", help="Change a setting (repeatable)")
    p_config.set_defaults(func=cmd_config)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level or load_settings().log_level
    setup_root_json_logging(component="cli", level=level, stream=sys.stderr)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
