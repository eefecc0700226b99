from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from typing import Any

from neurox.console import build_console
from neurox.core.config import get_settings
from neurox.core.errors import AuthFlowError
from neurox.core.logging import configure_logging
from neurox.domain.events import EventKind
from neurox.domain.models import LoginData
from neurox.domain.state import AuthState


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign in and stream live dialog events for the operator's company")
    parser.add_argument("--email", help="Sign in with this email when no stored session is valid")
    parser.add_argument("--password", help="Password for --email; prompted when omitted")
    parser.add_argument("--session-file", help="Override NEUROX_SESSION_FILE")
    parser.add_argument(
        "--duration",
        type=float,
        default=0,
        help="Stop after this many seconds; 0 streams until interrupted",
    )
    return parser


async def _watch(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.session_file:
        settings = settings.model_copy(update={"session_file": args.session_file})
    console = build_console(settings)
    console.notifier.subscribe(lambda item: print(f"[{item.level.value}] {item.title} {item.description or ''}".rstrip()))

    def _print_message(payload: dict[str, Any]) -> None:
        print(f"appeal={payload.get('appeal_id')} {payload.get('text') or payload.get('message') or ''}")

    console.channel.on(EventKind.NEW_MESSAGE, _print_message)
    try:
        await console.start("/dialogs")
        if console.auth.state != AuthState.AUTHENTICATED:
            if not args.email:
                print("No valid session; pass --email to sign in", file=sys.stderr)
                return 2
            password = args.password or getpass.getpass("Password: ")
            try:
                await console.auth.login(LoginData(email=args.email, password=password))
            except AuthFlowError as exc:
                print(exc.message, file=sys.stderr)
                return 1
            await console.open_realtime()
        for view in console.dialogs.appeals:
            print(f"{view.id}\t{view.status}\t{view.client_name}\t{view.last_message}")
        if args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await console.aclose()
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_watch(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
