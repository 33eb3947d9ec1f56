"""Command line entry point: start/stop the automation session and keep it alive."""

from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys

from pydantic import ValidationError

from .config import BrowserToolsSettings, configure_logging, get_settings
from .heartbeat import HeartbeatStore, heartbeat
from .session import SessionError, SessionOptions, SessionOrchestrator


def _plural(count: int, word: str, suffix: str = "s") -> str:
    return f"{count} {word}{'' if count == 1 else suffix}"


def cmd_start(args: argparse.Namespace, settings: BrowserToolsSettings) -> int:
    options = SessionOptions(profile=args.profile, reset=args.reset, proxy=not args.no_proxy)
    orchestrator = SessionOrchestrator.from_settings(settings)
    try:
        info = asyncio.run(orchestrator.start(options))
    except SessionError as exc:
        print(f"✗ {exc}", file=sys.stderr)
        return 1

    if info.tunnel is not None:
        print(f"✓ SSH proxy ready on {info.tunnel.host}:{info.tunnel.port}")
    mode = "visible automation profile" if info.visible else "headless incognito"
    print(f"✓ Browser started on :{settings.debug_port} ({mode})")
    print(f"ℹ Session ends after {info.timeout_ms / 1000:g}s without activity")
    return 0


def cmd_stop(args: argparse.Namespace, settings: BrowserToolsSettings) -> int:
    orchestrator = SessionOrchestrator.from_settings(settings)
    report = asyncio.run(orchestrator.stop(from_watchdog=args.watchdog))

    if report.closed_tabs:
        print(f"✓ Closed {_plural(report.closed_tabs, 'tab')}")
    if report.browsers_stopped:
        print(f"✓ Stopped {_plural(report.browsers_stopped, 'automation browser process', 'es')}")
    else:
        print("ℹ No automation browser processes found for the automation profile directory.")
    if report.tunnel_stopped:
        print("✓ Stopped SSH proxy")
    return 0


def cmd_touch(args: argparse.Namespace, settings: BrowserToolsSettings) -> int:
    store = HeartbeatStore.at_path(settings.heartbeat_path)
    if store.touch():
        print("✓ Session heartbeat refreshed")
        return 0
    print("ℹ No active session", file=sys.stderr)
    return 1


def cmd_run(args: argparse.Namespace, settings: BrowserToolsSettings) -> int:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("✗ run requires a command", file=sys.stderr)
        return 2

    store = HeartbeatStore.at_path(settings.heartbeat_path)
    with heartbeat(store, settings.heartbeat_interval_ms):
        try:
            completed = subprocess.run(command)
        except OSError as exc:
            print(f"✗ {exc}", file=sys.stderr)
            return 127
    return completed.returncode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="browser-tools",
        description="Manage the browser automation session (DevTools on the configured port).",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_start = sub.add_parser("start", help="Launch the browser, SSH proxy and idle watchdog")
    p_start.add_argument(
        "--profile",
        action="store_true",
        help="Launch a visible browser using the persistent automation profile",
    )
    p_start.add_argument(
        "--reset",
        action="store_true",
        help="Wipe the automation profile before launching (visible only)",
    )
    p_start.add_argument(
        "--no-proxy", action="store_true", help="Skip starting the SSH SOCKS proxy"
    )
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Close tabs and stop the browser, proxy and watchdog")
    p_stop.add_argument("--watchdog", action="store_true", help=argparse.SUPPRESS)
    p_stop.set_defaults(func=cmd_stop)

    p_touch = sub.add_parser("touch", help="Refresh the session heartbeat once")
    p_touch.set_defaults(func=cmd_touch)

    p_run = sub.add_parser(
        "run", help="Run a command while keeping the session heartbeat fresh"
    )
    p_run.add_argument("command", nargs=argparse.REMAINDER)
    p_run.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"✗ Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(1)

    configure_logging(settings.log_level)
    exit_code = args.func(args, settings)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
