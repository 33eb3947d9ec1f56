"""Process spawning, signalling and liveness checks."""

from __future__ import annotations

import asyncio
import logging
import os
import signal as signals
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

import psutil

logger = logging.getLogger(__name__)


class TerminationResult(str, Enum):
    """Outcome of a signal, wait, escalate termination."""

    NOT_FOUND = "not_found"
    TERMINATED = "terminated"
    KILLED = "killed"


class ProcessHandle(Protocol):
    """The part of :class:`subprocess.Popen` callers rely on."""

    pid: int

    def poll(self) -> int | None:
        ...


class ProcessSupervisor:
    """Spawn detached children and signal processes by pid.

    A process that no longer exists is never an error here: ``signal`` returns
    ``False`` and ``is_alive`` returns ``False``. Zombies count as gone.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] | None = None) -> None:
        self._sleep = sleep or asyncio.sleep

    def spawn(
        self,
        command: Sequence[str],
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Start ``command`` in its own session with stdio discarded.

        The caller may drop the returned handle without waiting on it.
        """

        return subprocess.Popen(
            list(command),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

    def signal(self, pid: int, sig: int) -> bool:
        if pid <= 0:
            return False
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        return True

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    async def terminate(
        self,
        pid: int,
        *,
        sig: int = signals.SIGTERM,
        attempts: int = 10,
        interval: float = 0.1,
    ) -> TerminationResult:
        """Send ``sig``, poll for exit, and escalate to SIGKILL if the process lingers."""

        if not self.signal(pid, sig):
            return TerminationResult.NOT_FOUND
        for _ in range(attempts):
            if not self.is_alive(pid):
                return TerminationResult.TERMINATED
            await self._sleep(interval)
        if not self.is_alive(pid):
            return TerminationResult.TERMINATED
        logger.debug("Process ignored termination signal; killing", extra={"pid": pid})
        if self.signal(pid, signals.SIGKILL):
            return TerminationResult.KILLED
        return TerminationResult.TERMINATED

    def find(self, predicate: Callable[[list[str]], bool]) -> list[int]:
        """Return pids of running processes whose command line satisfies ``predicate``."""

        own_pid = os.getpid()
        matches: list[int] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if proc.info["pid"] == own_pid or not cmdline:
                continue
            if predicate(list(cmdline)):
                matches.append(proc.info["pid"])
        return matches


@dataclass(slots=True)
class FakeProcessHandle:
    pid: int
    returncode: int | None = None

    def poll(self) -> int | None:
        return self.returncode


@dataclass
class FakeProcessSupervisor:
    """Test double that tracks fake pids instead of touching the OS."""

    alive: set[int] = field(default_factory=set)
    stubborn: set[int] = field(default_factory=set)
    commands: dict[int, list[str]] = field(default_factory=dict)
    spawn_error: OSError | None = None
    next_pid: int = 4000
    spawned: list[list[str]] = field(default_factory=list)
    sent_signals: list[tuple[int, int]] = field(default_factory=list)

    def spawn(
        self,
        command: Sequence[str],
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> FakeProcessHandle:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.next_pid += 1
        self.spawned.append(list(command))
        self.alive.add(self.next_pid)
        self.commands[self.next_pid] = list(command)
        return FakeProcessHandle(pid=self.next_pid)

    def add_process(self, pid: int, command: Iterable[str]) -> None:
        self.alive.add(pid)
        self.commands[pid] = list(command)

    def signal(self, pid: int, sig: int) -> bool:
        self.sent_signals.append((pid, sig))
        if pid not in self.alive:
            return False
        if sig == signals.SIGKILL or (sig != 0 and pid not in self.stubborn):
            self.alive.discard(pid)
        return True

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    async def terminate(
        self,
        pid: int,
        *,
        sig: int = signals.SIGTERM,
        attempts: int = 10,
        interval: float = 0.1,
    ) -> TerminationResult:
        if not self.signal(pid, sig):
            return TerminationResult.NOT_FOUND
        if not self.is_alive(pid):
            return TerminationResult.TERMINATED
        self.signal(pid, signals.SIGKILL)
        return TerminationResult.KILLED

    def find(self, predicate: Callable[[list[str]], bool]) -> list[int]:
        return [
            pid
            for pid, command in self.commands.items()
            if pid in self.alive and predicate(command)
        ]


__all__ = [
    "FakeProcessHandle",
    "FakeProcessSupervisor",
    "ProcessHandle",
    "ProcessSupervisor",
    "TerminationResult",
]
