import asyncio
import logging
from pathlib import Path

import pytest

from browser_tools.browser import BrowserController
from browser_tools.config import BrowserToolsSettings
from browser_tools.heartbeat import HeartbeatStore
from browser_tools.process import FakeProcessSupervisor
from browser_tools.session import (
    SessionOptions,
    SessionOrchestrator,
    SessionStartError,
)
from browser_tools.state import JsonStateFile, MemoryStateFile
from browser_tools.tunnel import DEFAULT_TUNNEL_CONFIG, TunnelSupervisor

from test_browser import FakeDriver, no_wait

WATCHDOG_COMMAND = ["python", "-m", "browser_tools.watchdog"]


async def always_open(host: str, port: int, timeout: float) -> None:
    return None


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        driver: FakeDriver | None = None,
        tunnel_config=DEFAULT_TUNNEL_CONFIG,
        config_path=None,
        state_files: bool = False,
    ) -> None:
        self.settings = BrowserToolsSettings(
            BROWSER_TOOLS_CACHE=tmp_path, BROWSER_TOOLS_SESSION_TIMEOUT_MS=60_000
        )
        self.processes = FakeProcessSupervisor()
        if state_files:
            self.heartbeat = HeartbeatStore.at_path(self.settings.heartbeat_path)
            self.tunnel_state = JsonStateFile(self.settings.tunnel_state_path)
        else:
            self.heartbeat = HeartbeatStore(MemoryStateFile(), clock=lambda: 1_000)
            self.tunnel_state = MemoryStateFile()
        self.tunnel = TunnelSupervisor(
            self.tunnel_state,
            self.processes,
            None if config_path else tunnel_config,
            config_path=config_path,
            probe=always_open,
            sleep=no_wait,
        )
        self.driver = driver or FakeDriver(pages=2)
        self.browser = BrowserController(
            self.settings, self.processes, driver=self.driver, sleep=no_wait, executable="brave"
        )
        self.sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        self.orchestrator = SessionOrchestrator(
            self.settings,
            heartbeat=self.heartbeat,
            tunnel=self.tunnel,
            browser=self.browser,
            processes=self.processes,
            watchdog_command=WATCHDOG_COMMAND,
            sleep=record_sleep,
        )

    def start(self, **options):
        return asyncio.run(self.orchestrator.start(SessionOptions(**options)))

    def stop(self, **kwargs):
        return asyncio.run(self.orchestrator.stop(**kwargs))


def test_start_launches_tunnel_browser_then_watchdog(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    info = harness.start()

    tunnel_cmd, browser_cmd, watchdog_cmd = harness.processes.spawned
    assert tunnel_cmd == list(DEFAULT_TUNNEL_CONFIG.command)
    assert browser_cmd[0] == "brave"
    assert "--proxy-server=socks5://127.0.0.1:1080" in browser_cmd
    assert "--headless=new" in browser_cmd
    assert watchdog_cmd == WATCHDOG_COMMAND

    record = harness.heartbeat.read()
    assert record.timeout_ms == 60_000
    assert record.watcher_pid == info.watchdog_pid
    assert not record.shutdown_requested
    assert harness.tunnel.read_state().pid == info.tunnel.pid
    assert info.endpoint == "http://localhost:9222"
    assert info.visible is False


def test_start_retires_previous_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.processes.add_process(901, ["python", "-m", "browser_tools.watchdog"])
    harness.processes.add_process(902, ["ssh", "-N"])
    harness.processes.add_process(903, ["brave", f"--user-data-dir={harness.settings.profile_dir}"])
    harness.heartbeat.initialize(5_000)
    harness.heartbeat.set_watchdog_pid(901)
    harness.tunnel_state.save(
        {"pid": 902, "host": "127.0.0.1", "port": 1080, "command": ["ssh", "-N"], "startedAt": 1}
    )

    info = harness.start()

    assert not {901, 902, 903} & harness.processes.alive
    assert harness.sleeps == [1.0]
    assert harness.heartbeat.read().watcher_pid == info.watchdog_pid
    assert harness.heartbeat.read().timeout_ms == 60_000


def test_browser_connect_failure_rolls_back(tmp_path: Path) -> None:
    harness = Harness(tmp_path, driver=FakeDriver(failures=1_000))

    with pytest.raises(SessionStartError, match="Failed to start browser session"):
        harness.start()

    assert len(harness.processes.spawned) == 2
    assert harness.processes.alive == set()
    assert harness.heartbeat.read() is None
    assert harness.tunnel.read_state() is None


def test_tunnel_failure_aborts_before_browser(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.processes.spawn_error = FileNotFoundError("ssh")

    with pytest.raises(SessionStartError, match="Failed to initialize SSH proxy"):
        harness.start()

    assert harness.processes.spawned == []
    assert harness.heartbeat.read() is None


def test_no_proxy_ignores_broken_override(tmp_path: Path) -> None:
    harness = Harness(tmp_path, config_path=tmp_path / "missing.yaml")

    info = harness.start(proxy=False)

    assert info.tunnel is None
    browser_cmd = harness.processes.spawned[0]
    assert not any(arg.startswith("--proxy-server") for arg in browser_cmd)


def test_broken_override_fails_start_with_proxy(tmp_path: Path) -> None:
    harness = Harness(tmp_path, config_path=tmp_path / "missing.yaml")

    with pytest.raises(SessionStartError, match="Failed to initialize SSH proxy"):
        harness.start()


def test_reset_only_applies_to_visible_profile(tmp_path: Path, caplog) -> None:
    harness = Harness(tmp_path)
    marker = harness.settings.profile_dir / "Preferences"
    marker.parent.mkdir(parents=True)
    marker.write_text("{}", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        harness.start(reset=True)
    assert marker.exists()
    assert "Ignoring reset" in caplog.text

    info = harness.start(profile=True, reset=True)
    assert not marker.exists()
    assert harness.settings.profile_dir.is_dir()
    assert info.visible is True
    assert "--headless=new" not in harness.processes.spawned[-2]


def test_stop_tears_everything_down(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    info = harness.start()

    report = harness.stop()

    assert report.closed_tabs == 2
    assert report.browsers_stopped == 1
    assert report.tunnel_stopped is True
    assert report.watchdog_stopped is True
    assert harness.processes.alive == set()
    assert harness.heartbeat.read() is None
    assert harness.tunnel.read_state() is None
    assert info.watchdog_pid not in harness.processes.alive


def test_stop_from_watchdog_leaves_watchdog_alone(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    info = harness.start()

    report = harness.stop(from_watchdog=True)

    assert report.watchdog_stopped is False
    assert harness.processes.alive == {info.watchdog_pid}
    assert harness.heartbeat.read() is None


def test_stop_without_session_is_idempotent(tmp_path: Path) -> None:
    harness = Harness(tmp_path, driver=FakeDriver(failures=1_000))

    first = harness.stop()
    second = harness.stop()

    for report in (first, second):
        assert report.closed_tabs == 0
        assert report.browsers_stopped == 0
        assert report.tunnel_stopped is False
        assert report.watchdog_stopped is False


def test_stop_removes_unreadable_state_files(tmp_path: Path) -> None:
    harness = Harness(tmp_path, driver=FakeDriver(failures=1_000), state_files=True)
    heartbeat_path = harness.settings.heartbeat_path
    tunnel_path = harness.settings.tunnel_state_path
    heartbeat_path.parent.mkdir(parents=True)
    heartbeat_path.write_bytes(b'{"lastPing": "\xff"}')
    tunnel_path.write_text("{not json", encoding="utf-8")

    report = harness.stop()

    assert report.tunnel_stopped is False
    assert report.watchdog_stopped is False
    assert not heartbeat_path.exists()
    assert not tunnel_path.exists()


def test_unusable_profile_directory_is_a_start_error(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.settings.cache_dir.parent.mkdir(parents=True, exist_ok=True)
    harness.settings.cache_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(SessionStartError, match="Failed to prepare automation profile"):
        harness.start()

    assert harness.processes.spawned == []
