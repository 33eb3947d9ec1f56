from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from browser_tools import config, watchdog as watchdog_module
from browser_tools.heartbeat import HeartbeatRecord, HeartbeatStore
from browser_tools.process import FakeProcessSupervisor
from browser_tools.state import MemoryStateFile
from browser_tools.watchdog import (
    Watchdog,
    WatchdogAction,
    evaluate,
    poll_interval_ms,
)

STOP = ["browser-tools", "stop", "--watchdog"]


class SimulatedTime:
    """Clock plus sleep that advances the clock instead of waiting."""

    def __init__(self, now: int = 50_000) -> None:
        self.now = now
        self.sleeps: list[float] = []
        self.on_sleep = None

    def clock(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(round(seconds * 1000))
        if self.on_sleep is not None:
            self.on_sleep()


def build(time_source: SimulatedTime, *, pid: int = 777):
    store = HeartbeatStore(MemoryStateFile(), clock=time_source.clock)
    processes = FakeProcessSupervisor()
    dog = Watchdog(
        store,
        processes,
        stop_command=STOP,
        clock=time_source.clock,
        sleep=time_source.sleep,
        pid=pid,
    )
    return dog, store, processes


@pytest.mark.parametrize(
    ("remaining", "expected"),
    [
        (200, 250),
        (0, 50),
        (-30, 50),
        (2_000, 1_000),
        (8_000, 2_000),
        (400_000, 60_000),
    ],
)
def test_poll_interval(remaining: int, expected: int) -> None:
    assert poll_interval_ms(remaining) == expected


def test_evaluate_transitions() -> None:
    now = 10_000
    fresh = HeartbeatRecord(timeout_ms=5_000, last_ping=now - 1_000)

    assert evaluate(None, now).action is WatchdogAction.ABSENT
    assert evaluate(fresh, now).action is WatchdogAction.CONTINUE
    assert evaluate(fresh, now).sleep_ms == 1_000
    assert (
        evaluate(HeartbeatRecord(5_000, now, shutdown_requested=True), now).action
        is WatchdogAction.SHUTDOWN_REQUESTED
    )
    assert evaluate(HeartbeatRecord(None, now), now).action is WatchdogAction.MALFORMED
    assert (
        evaluate(HeartbeatRecord(5_000, now - 5_001), now).action is WatchdogAction.TIMED_OUT
    )
    assert evaluate(HeartbeatRecord(5_000, now - 5_000), now).action is WatchdogAction.CONTINUE


def test_evaluate_detects_superseded_watchdog() -> None:
    record = HeartbeatRecord(timeout_ms=5_000, last_ping=0, watcher_pid=99)

    assert evaluate(record, 1, own_pid=98).action is WatchdogAction.SUPERSEDED
    assert evaluate(record, 1, own_pid=99).action is WatchdogAction.CONTINUE
    assert evaluate(record, 1).action is WatchdogAction.CONTINUE


def test_short_timeout_triggers_teardown() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)
    started = sim.now
    store.initialize(200)

    action = asyncio.run(dog.run())

    assert action is WatchdogAction.TIMED_OUT
    assert 200 < sim.now - started <= 500
    assert processes.spawned == [STOP]
    assert store.read() is None


def test_teardown_happens_at_or_after_expiry_never_before() -> None:
    for timeout in (1, 999, 1_000, 4_321, 90_000, 3_600_000):
        sim = SimulatedTime()
        dog, store, processes = build(sim)
        record = store.initialize(timeout)

        assert asyncio.run(dog.run()) is WatchdogAction.TIMED_OUT
        assert sim.now > record.last_ping + timeout
        assert sim.now <= record.last_ping + timeout + 60_000
        assert all(0 < pause <= 60 for pause in sim.sleeps)


def test_touches_postpone_teardown() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)
    store.initialize(4_000)
    remaining_touches = [25]

    def keep_alive() -> None:
        if remaining_touches[0] > 0:
            remaining_touches[0] -= 1
            store.touch()

    sim.on_sleep = keep_alive
    action = asyncio.run(dog.run())

    assert action is WatchdogAction.TIMED_OUT
    assert len(sim.sleeps) > 25
    assert sim.now - 50_000 > 25 * 1_000
    assert processes.spawned == [STOP]


def test_shutdown_request_exits_without_spawning_stop() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)
    store.initialize(3_600_000)
    store.request_shutdown()

    assert asyncio.run(dog.run()) is WatchdogAction.SHUTDOWN_REQUESTED
    assert sim.sleeps == []
    assert processes.spawned == []
    assert store.read() is None


def test_shutdown_request_is_seen_within_one_poll() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)
    store.initialize(3_600_000)
    sim.on_sleep = store.request_shutdown

    assert asyncio.run(dog.run()) is WatchdogAction.SHUTDOWN_REQUESTED
    assert len(sim.sleeps) == 1
    assert processes.spawned == []


def test_absent_record_exits_silently() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)

    assert asyncio.run(dog.run()) is WatchdogAction.ABSENT
    assert processes.spawned == []


def test_malformed_record_tears_down() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim)
    store.repository.save({"lastPing": sim.now, "shutdownRequested": False})

    assert asyncio.run(dog.run()) is WatchdogAction.MALFORMED
    assert processes.spawned == [STOP]
    assert store.read() is None


def test_superseded_watchdog_leaves_record_alone() -> None:
    sim = SimulatedTime()
    dog, store, processes = build(sim, pid=10)
    store.initialize(1_000)
    store.set_watchdog_pid(11)

    assert asyncio.run(dog.run()) is WatchdogAction.SUPERSEDED
    assert store.read().watcher_pid == 11
    assert processes.spawned == []


def test_real_clock_200ms_timeout_deletes_heartbeat_file(tmp_path: Path) -> None:
    path = tmp_path / ".cache" / "session-heartbeat.json"
    store = HeartbeatStore.at_path(path)
    processes = FakeProcessSupervisor()
    dog = Watchdog(store, processes, stop_command=STOP)
    store.initialize(200)

    started = time.monotonic()
    action = asyncio.run(dog.run())
    elapsed = time.monotonic() - started

    assert action is WatchdogAction.TIMED_OUT
    assert 0.15 <= elapsed < 0.6
    assert not path.exists()
    assert processes.spawned == [STOP]


def test_main_exits_when_no_session(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BROWSER_TOOLS_CACHE", str(tmp_path))
    config.get_settings.cache_clear()
    try:
        watchdog_module.main()
    finally:
        config.get_settings.cache_clear()

    assert not (tmp_path / ".cache" / "session-heartbeat.json").exists()


def test_main_clears_heartbeat_after_unexpected_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("BROWSER_TOOLS_CACHE", str(tmp_path))
    monkeypatch.setenv("BROWSER_TOOLS_WATCHDOG_DEBUG", "1")
    path = tmp_path / ".cache" / "session-heartbeat.json"
    HeartbeatStore.at_path(path).initialize(60_000)

    async def explode(self):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(Watchdog, "run", explode)
    config.get_settings.cache_clear()
    try:
        watchdog_module.main()
    finally:
        config.get_settings.cache_clear()

    assert not path.exists()
