"""Persisted identity of the running tunnel process."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass(slots=True)
class TunnelState:
    pid: int
    host: str
    port: int
    command: tuple[str, ...]
    started_at: int

    @property
    def proxy_url(self) -> str:
        return f"socks5://{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "host": self.host,
            "port": self.port,
            "command": list(self.command),
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TunnelState | None":
        pid = _as_int(payload.get("pid"))
        if pid is None or pid <= 0:
            return None
        command = payload.get("command")
        return cls(
            pid=pid,
            host=str(payload.get("host", "")),
            port=_as_int(payload.get("port")) or 0,
            command=tuple(str(part) for part in command) if isinstance(command, list) else (),
            started_at=_as_int(payload.get("startedAt")) or 0,
        )


__all__ = ["TunnelState"]
