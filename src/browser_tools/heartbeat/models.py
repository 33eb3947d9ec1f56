"""Data model for the session heartbeat record."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


@dataclass(slots=True)
class HeartbeatRecord:
    """Liveness state for the active browser session.

    ``timeout_ms`` is ``None`` when the persisted value is missing or not a
    positive number; the watchdog treats such a record as malformed.
    """

    timeout_ms: int | None
    last_ping: int
    shutdown_requested: bool = False
    watcher_pid: int | None = None

    @property
    def is_valid(self) -> bool:
        return self.timeout_ms is not None and self.timeout_ms > 0

    def elapsed_ms(self, now: int) -> int:
        return now - self.last_ping

    def remaining_ms(self, now: int) -> int:
        return (self.timeout_ms or 0) - self.elapsed_ms(now)

    def is_expired(self, now: int) -> bool:
        return self.elapsed_ms(now) > (self.timeout_ms or 0)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timeoutMs": self.timeout_ms,
            "lastPing": self.last_ping,
            "shutdownRequested": self.shutdown_requested,
        }
        if self.watcher_pid is not None:
            payload["watcherPid"] = self.watcher_pid
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "HeartbeatRecord":
        timeout_ms = _as_int(payload.get("timeoutMs"))
        if timeout_ms is not None and timeout_ms <= 0:
            timeout_ms = None
        return cls(
            timeout_ms=timeout_ms,
            last_ping=_as_int(payload.get("lastPing")) or 0,
            shutdown_requested=bool(payload.get("shutdownRequested", False)),
            watcher_pid=_as_int(payload.get("watcherPid")),
        )


__all__ = ["HeartbeatRecord"]
