"""browser-tools diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from browser_tools.config import BrowserToolsSettings
from browser_tools.heartbeat import HeartbeatStore, epoch_ms
from browser_tools.process import ProcessSupervisor
from browser_tools.state import JsonStateFile
from browser_tools.tunnel import TunnelState


def load_settings() -> BrowserToolsSettings:
    return BrowserToolsSettings()


def heartbeat_summary(settings: BrowserToolsSettings, processes: ProcessSupervisor) -> dict:
    record = HeartbeatStore.at_path(settings.heartbeat_path).read()
    if record is None:
        return {"path": str(settings.heartbeat_path), "active": False}
    now = epoch_ms()
    return {
        "path": str(settings.heartbeat_path),
        "active": True,
        "timeout_ms": record.timeout_ms,
        "last_ping": record.last_ping,
        "idle_ms": record.elapsed_ms(now),
        "remaining_ms": record.remaining_ms(now) if record.is_valid else None,
        "expired": record.is_expired(now) if record.is_valid else None,
        "shutdown_requested": record.shutdown_requested,
        "watchdog_pid": record.watcher_pid,
        "watchdog_alive": (
            processes.is_alive(record.watcher_pid) if record.watcher_pid is not None else None
        ),
    }


def tunnel_summary(settings: BrowserToolsSettings, processes: ProcessSupervisor) -> dict:
    payload = JsonStateFile(settings.tunnel_state_path).load()
    state = TunnelState.from_dict(payload) if payload is not None else None
    if state is None:
        return {"path": str(settings.tunnel_state_path), "active": False}
    return {
        "path": str(settings.tunnel_state_path),
        "active": True,
        "pid": state.pid,
        "alive": processes.is_alive(state.pid),
        "endpoint": f"{state.host}:{state.port}",
        "command": list(state.command),
        "started_at": state.started_at,
    }


def cmd_heartbeat(args: argparse.Namespace) -> None:
    print(json.dumps(heartbeat_summary(load_settings(), ProcessSupervisor()), indent=2))


def cmd_tunnel(args: argparse.Namespace) -> None:
    print(json.dumps(tunnel_summary(load_settings(), ProcessSupervisor()), indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    settings = load_settings()
    processes = ProcessSupervisor()
    payload = {
        "cache_dir": str(settings.cache_dir),
        "session_timeout_ms": settings.resolve_session_timeout_ms(),
        "heartbeat": heartbeat_summary(settings, processes),
        "tunnel": tunnel_summary(settings, processes),
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="browser-tools diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_heartbeat = sub.add_parser("heartbeat", help="Show the session heartbeat record")
    p_heartbeat.set_defaults(func=cmd_heartbeat)

    p_tunnel = sub.add_parser("tunnel", help="Show the SSH proxy state record")
    p_tunnel.set_defaults(func=cmd_tunnel)

    p_status = sub.add_parser("status", help="Show heartbeat and tunnel state together")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
