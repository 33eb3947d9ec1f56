"""Read-modify-write access to the persisted heartbeat record."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from ..state import JsonStateFile, StateRepository
from .models import HeartbeatRecord


def epoch_ms() -> int:
    return int(time.time() * 1000)


class HeartbeatStore:
    """Session liveness record shared by CLI tools, the watchdog and the orchestrator.

    A missing record means "no session" and is never an error: mutators
    return ``False`` instead of creating one. Concurrent writers are not
    serialized; the last write wins.
    """

    def __init__(
        self,
        repository: StateRepository,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or epoch_ms

    @classmethod
    def at_path(cls, path: Path, *, clock: Callable[[], int] | None = None) -> "HeartbeatStore":
        return cls(JsonStateFile(path), clock=clock)

    @property
    def repository(self) -> StateRepository:
        return self._repository

    def initialize(self, timeout_ms: int) -> HeartbeatRecord:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
            raise ValueError(f"Heartbeat timeout must be a positive integer, got {timeout_ms!r}")
        record = HeartbeatRecord(timeout_ms=timeout_ms, last_ping=self._clock())
        self._repository.save(record.to_dict())
        return record

    def read(self) -> HeartbeatRecord | None:
        payload = self._repository.load()
        if payload is None:
            return None
        return HeartbeatRecord.from_dict(payload)

    def touch(self) -> bool:
        record = self.read()
        if record is None:
            return False
        record.last_ping = max(record.last_ping, self._clock())
        self._repository.save(record.to_dict())
        return True

    def request_shutdown(self) -> bool:
        record = self.read()
        if record is None:
            return False
        record.shutdown_requested = True
        self._repository.save(record.to_dict())
        return True

    def set_watchdog_pid(self, pid: int) -> bool:
        record = self.read()
        if record is None:
            return False
        record.watcher_pid = pid
        self._repository.save(record.to_dict())
        return True

    def clear_watchdog_pid(self) -> bool:
        record = self.read()
        if record is None or record.watcher_pid is None:
            return False
        record.watcher_pid = None
        self._repository.save(record.to_dict())
        return True

    def clear(self) -> None:
        self._repository.clear()


__all__ = ["HeartbeatStore", "epoch_ms"]
