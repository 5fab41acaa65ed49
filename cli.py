#!/usr/bin/env python3
"""
displayhub: command-line access to the session core.

Examples:
    displayhub login admin@example.com
    displayhub list players
    displayhub command 42 url --url https://example.com/menu
    displayhub watch --seconds 120
    displayhub logout

Credentials persist in STORAGE_PATH (default ~/.displayhub/session.db) so
consecutive invocations share one session.
"""

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

from api.auth import TwoFactorChallenge
from config.settings import get_settings
from core.async_utils import run_sync
from core.errors import SessionError
from core.logging_config import configure_logging
from core.session import SessionRuntime
from realtime.events import AuthExpiredEvent, EntityFamily

load_dotenv()

DEFAULT_STORAGE = str(Path.home() / ".displayhub" / "session.db")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report_error(result) -> int:
    print(f"Error: {result.error}", file=sys.stderr)
    return 1


async def cmd_login(runtime: SessionRuntime, args) -> int:
    password = args.password or getpass.getpass("Password: ")
    result = await runtime.auth.login(args.email, password, captcha_token=args.captcha)
    if not result.ok:
        throttle = runtime.auth.throttle
        if throttle.attempts and throttle.remaining_attempts:
            print(f"{throttle.remaining_attempts} attempt(s) left before lockout", file=sys.stderr)
        return _report_error(result)

    credentials = result.data
    if isinstance(credentials, TwoFactorChallenge):
        code = input("2FA code: ").strip()
        credentials = (await runtime.auth.verify_2fa_login(code, credentials.temp_token)).raise_for_error()

    user = credentials.user
    print(f"Logged in as {user.email} ({user.role})")
    return 0


async def cmd_logout(runtime: SessionRuntime, args) -> int:
    await runtime.logout()
    print("Logged out")
    return 0


async def cmd_list(runtime: SessionRuntime, args) -> int:
    facade = {"companies": runtime.companies, "players": runtime.players, "users": runtime.users}[args.family]
    filter = dict(pair.split("=", 1) for pair in args.where) if args.where else None
    result = await facade.list(filter)
    records = result.raise_for_error()
    if result.used_fallback:
        print("(offline: showing cached data)", file=sys.stderr)
    _print_json(records)
    return 0


async def cmd_command(runtime: SessionRuntime, args) -> int:
    payload = {"url": args.url} if args.url else {}
    result = await runtime.players.send_command(args.player_id, args.type, payload)
    _print_json(result.raise_for_error())
    return 0


async def cmd_watch(runtime: SessionRuntime, args) -> int:
    if not runtime.credentials.is_authenticated:
        print("Error: not logged in", file=sys.stderr)
        return 1

    expired = asyncio.Event()

    def on_event(event):
        print(json.dumps({"family": event.family.value, "op": event.op.value, "payload": event.payload}, default=str))

    def on_expired(event: AuthExpiredEvent):
        print(f"Session ended: {event.reason}", file=sys.stderr)
        expired.set()

    for family in EntityFamily:
        runtime.events.subscribe_family(family, on_event)
    runtime.events.on_auth_expired(on_expired)

    await runtime.channel.ensure_connected()
    print(f"Watching ({runtime.channel.state.value}), Ctrl-C to stop", file=sys.stderr)
    try:
        await asyncio.wait_for(expired.wait(), timeout=args.seconds)
    except asyncio.TimeoutError:
        pass
    return 1 if expired.is_set() else 0


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "list": cmd_list,
    "command": cmd_command,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="displayhub", description="Display player management client")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL setting)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Log in and store the session")
    login.add_argument("email")
    login.add_argument("--password", help="Password (prompted when omitted)")
    login.add_argument("--captcha", help="Captcha token, required after repeated failures")

    subparsers.add_parser("logout", help="End the stored session")

    list_cmd = subparsers.add_parser("list", help="List entities")
    list_cmd.add_argument("family", choices=["companies", "players", "users"])
    list_cmd.add_argument("--where", action="append", metavar="FIELD=VALUE", help="Filter on a field")

    command = subparsers.add_parser("command", help="Send a command to a player")
    command.add_argument("player_id")
    command.add_argument("type", choices=["reboot", "screenshot", "update", "url"])
    command.add_argument("--url", help="URL for update and url commands")

    watch = subparsers.add_parser("watch", help="Print realtime entity events")
    watch.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")

    return parser


async def _run(args) -> int:
    settings = get_settings()
    if not settings.storage.storage_path:
        settings.storage.storage_path = DEFAULT_STORAGE
    runtime = SessionRuntime(settings)
    await runtime.start(connect=False)
    try:
        return await COMMANDS[args.command](runtime, args)
    except SessionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await runtime.aclose()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(
        level=args.log_level or settings.log_level,
        fmt=settings.log_format,
        log_file=settings.log_file,
    )
    try:
        return run_sync(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
