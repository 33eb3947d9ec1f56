"""Idle-session watchdog.

Runs as a detached process, one per browser session. It polls the heartbeat
record and tears the session down once nobody has touched it for longer than
the record's timeout, or exits quietly when someone else already did.

    python -m browser_tools.watchdog
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Sequence

from .config import configure_logging, get_settings
from .heartbeat import HeartbeatRecord, HeartbeatStore, epoch_ms
from .process import ProcessSupervisor

MIN_POLL_INTERVAL_MS = 1_000
MAX_POLL_INTERVAL_MS = 60_000
# Extra wait past the expiry point so the next poll sees elapsed > timeout.
EXPIRY_GRACE_MS = 50

logger = logging.getLogger(__name__)


class WatchdogAction(str, Enum):
    CONTINUE = "continue"
    ABSENT = "absent"
    SUPERSEDED = "superseded"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    MALFORMED = "malformed"
    TIMED_OUT = "timed_out"

    @property
    def tears_down(self) -> bool:
        return self in {WatchdogAction.MALFORMED, WatchdogAction.TIMED_OUT}

    @property
    def is_terminal(self) -> bool:
        return self is not WatchdogAction.CONTINUE


@dataclass(slots=True)
class WatchdogDecision:
    action: WatchdogAction
    sleep_ms: int = 0
    elapsed_ms: int | None = None


def poll_interval_ms(remaining_ms: int) -> int:
    """Quarter of the remaining budget, clamped, never sleeping far past expiry."""

    remaining_ms = max(remaining_ms, 0)
    interval = min(max(remaining_ms // 4, MIN_POLL_INTERVAL_MS), MAX_POLL_INTERVAL_MS)
    return min(interval, remaining_ms + EXPIRY_GRACE_MS)


def evaluate(
    record: HeartbeatRecord | None, now: int, *, own_pid: int | None = None
) -> WatchdogDecision:
    """Decide the next transition for a single poll of the heartbeat record."""

    if record is None:
        return WatchdogDecision(WatchdogAction.ABSENT)
    if own_pid is not None and record.watcher_pid is not None and record.watcher_pid != own_pid:
        return WatchdogDecision(WatchdogAction.SUPERSEDED)
    if record.shutdown_requested:
        return WatchdogDecision(WatchdogAction.SHUTDOWN_REQUESTED)
    if not record.is_valid:
        return WatchdogDecision(WatchdogAction.MALFORMED)
    elapsed = record.elapsed_ms(now)
    if record.is_expired(now):
        return WatchdogDecision(WatchdogAction.TIMED_OUT, elapsed_ms=elapsed)
    return WatchdogDecision(
        WatchdogAction.CONTINUE,
        sleep_ms=poll_interval_ms(record.remaining_ms(now)),
        elapsed_ms=elapsed,
    )


def default_stop_command() -> list[str]:
    return [sys.executable, "-m", "browser_tools.cli", "stop", "--watchdog"]


class Watchdog:
    """Sole authority for idle timeouts; see :func:`evaluate` for the transitions."""

    def __init__(
        self,
        store: HeartbeatStore,
        processes: ProcessSupervisor,
        *,
        stop_command: Sequence[str] | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        pid: int | None = None,
    ) -> None:
        self._store = store
        self._processes = processes
        self._stop_command = list(stop_command or default_stop_command())
        self._clock = clock or epoch_ms
        self._sleep = sleep or asyncio.sleep
        self._pid = pid if pid is not None else os.getpid()

    def poll(self) -> WatchdogDecision:
        return evaluate(self._store.read(), self._clock(), own_pid=self._pid)

    def _terminate(self, decision: WatchdogDecision) -> None:
        if decision.action.tears_down:
            logger.debug(
                "Tearing down session",
                extra={"reason": decision.action.value, "elapsed_ms": decision.elapsed_ms},
            )
            # Detached; the handle is intentionally not awaited.
            self._processes.spawn(self._stop_command, env=os.environ)
        if decision.action is not WatchdogAction.SUPERSEDED:
            self._store.clear()

    async def run(self) -> WatchdogAction:
        """Poll until a terminal transition, perform it and return its action."""

        while True:
            decision = self.poll()
            if decision.action.is_terminal:
                logger.debug("Watchdog exiting", extra={"reason": decision.action.value})
                if decision.action is not WatchdogAction.ABSENT:
                    self._terminate(decision)
                return decision.action
            logger.debug(
                "Session alive; sleeping",
                extra={"sleep_ms": decision.sleep_ms, "elapsed_ms": decision.elapsed_ms},
            )
            await self._sleep(decision.sleep_ms / 1000)


def main() -> None:
    """Entry point for the detached watchdog process."""

    settings = get_settings()
    if settings.watchdog_debug:
        settings.cache_dir.mkdir(parents=True, exist_ok=True)
        configure_logging("DEBUG", settings.cache_dir / "watchdog.log")
    else:
        configure_logging("WARNING")
    store = HeartbeatStore.at_path(settings.heartbeat_path)
    watchdog = Watchdog(store, ProcessSupervisor())
    try:
        asyncio.run(watchdog.run())
    except Exception as exc:
        logger.warning("Session watchdog exited unexpectedly: %s", exc, exc_info=True)
        store.clear()


if __name__ == "__main__":
    main()
