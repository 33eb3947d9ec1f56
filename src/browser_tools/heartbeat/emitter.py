"""Scoped heartbeat refresh for CLI operations that talk to the browser."""

from __future__ import annotations

import asyncio
import logging
import threading
from types import TracebackType

from ..config import get_settings
from .store import HeartbeatStore

MIN_INTERVAL_MS = 250

logger = logging.getLogger(__name__)


class HeartbeatEmitter:
    """Keep the session heartbeat fresh while a block of work runs.

    Usable as ``async with`` (ticks from an asyncio task) or plain ``with``
    (ticks from a daemon thread). Both forms touch once on entry, every
    ``interval_ms`` while inside, and exactly once more on exit, whether the
    block returned, raised or was cancelled.
    """

    def __init__(self, store: HeartbeatStore, interval_ms: int = 1000) -> None:
        self._store = store
        self._interval = max(MIN_INTERVAL_MS, int(interval_ms)) / 1000
        self._task: asyncio.Task[None] | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._stopped = False
        self.ticks = 0

    @property
    def interval(self) -> float:
        """Seconds between refreshes after clamping."""

        return self._interval

    def _tick(self) -> None:
        if self._stopped:
            return
        try:
            self._store.touch()
        except OSError as exc:
            logger.warning("Failed to refresh session heartbeat", extra={"error": str(exc)})
        self.ticks += 1

    def _final_tick(self) -> None:
        if self._stopped:
            return
        self._tick()
        self._stopped = True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._tick()

    def _reset(self) -> None:
        self._stopped = False
        self._stop_event = threading.Event()

    async def __aenter__(self) -> "HeartbeatEmitter":
        self._reset()
        self._tick()
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        task, self._task = self._task, None
        try:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        finally:
            self._final_tick()

    def _run_thread(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._tick()

    def __enter__(self) -> "HeartbeatEmitter":
        self._reset()
        self._tick()
        self._thread = threading.Thread(
            target=self._run_thread, name="heartbeat-emitter", daemon=True
        )
        self._thread.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        thread, self._thread = self._thread, None
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout=self._interval + 1)
        self._final_tick()


def heartbeat(store: HeartbeatStore | None = None, interval_ms: int | None = None) -> HeartbeatEmitter:
    """Build an emitter for the configured session heartbeat."""

    if store is None or interval_ms is None:
        settings = get_settings()
        store = store or HeartbeatStore.at_path(settings.heartbeat_path)
        interval_ms = interval_ms if interval_ms is not None else settings.heartbeat_interval_ms
    return HeartbeatEmitter(store, interval_ms)


__all__ = ["HeartbeatEmitter", "MIN_INTERVAL_MS", "heartbeat"]
