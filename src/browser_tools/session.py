"""Session start/stop: browser, tunnel, heartbeat and watchdog wired together."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from .browser import BrowserController
from .config import BrowserToolsSettings
from .heartbeat import HeartbeatStore
from .process import ProcessSupervisor, TerminationResult
from .tunnel import TunnelConfigError, TunnelStartError, TunnelState, TunnelSupervisor

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for session orchestration errors."""


class SessionStartError(SessionError):
    """Raised when a session could not be started; partial state has been rolled back."""


@dataclass(slots=True)
class SessionOptions:
    profile: bool = False
    reset: bool = False
    proxy: bool = True


@dataclass(slots=True)
class SessionInfo:
    endpoint: str
    browser_pid: int
    watchdog_pid: int
    timeout_ms: int
    visible: bool
    tunnel: TunnelState | None = None


@dataclass(slots=True)
class StopReport:
    closed_tabs: int = 0
    browsers_stopped: int = 0
    tunnel_stopped: bool = False
    watchdog_stopped: bool = False


def default_watchdog_command() -> list[str]:
    return [sys.executable, "-m", "browser_tools.watchdog"]


class SessionOrchestrator:
    """Entry points used by the ``start`` and ``stop`` commands."""

    def __init__(
        self,
        settings: BrowserToolsSettings,
        *,
        heartbeat: HeartbeatStore,
        tunnel: TunnelSupervisor,
        browser: BrowserController,
        processes: ProcessSupervisor,
        watchdog_command: Sequence[str] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        settle_delay: float = 1.0,
    ) -> None:
        self._settings = settings
        self._heartbeat = heartbeat
        self._tunnel = tunnel
        self._browser = browser
        self._processes = processes
        self._watchdog_command = list(watchdog_command or default_watchdog_command())
        self._sleep = sleep or asyncio.sleep
        self._settle_delay = settle_delay

    @classmethod
    def from_settings(cls, settings: BrowserToolsSettings) -> "SessionOrchestrator":
        processes = ProcessSupervisor()
        return cls(
            settings,
            heartbeat=HeartbeatStore.at_path(settings.heartbeat_path),
            tunnel=TunnelSupervisor.at_path(
                settings.tunnel_state_path, processes, config_path=settings.ssh_proxy_config
            ),
            browser=BrowserController(settings, processes),
            processes=processes,
        )

    async def start(self, options: SessionOptions | None = None) -> SessionInfo:
        options = options or SessionOptions()
        timeout_ms = self._settings.resolve_session_timeout_ms()

        await self._retire_previous_session()
        self._prepare_profile(options)

        tunnel_state: TunnelState | None = None
        if options.proxy:
            try:
                tunnel_state = await self._tunnel.start()
            except (TunnelStartError, TunnelConfigError) as exc:
                raise SessionStartError(f"Failed to initialize SSH proxy: {exc}") from exc

        try:
            browser = self._browser.launch(visible=options.profile, proxy=tunnel_state)
            await self._browser.wait_until_ready()
            self._heartbeat.initialize(timeout_ms)
            self._heartbeat.touch()
            watchdog = self._processes.spawn(self._watchdog_command, env=os.environ)
            self._heartbeat.set_watchdog_pid(watchdog.pid)
        except Exception as exc:
            logger.warning("Session start failed; rolling back", extra={"error": str(exc)})
            await self._rollback()
            raise SessionStartError(f"Failed to start browser session: {exc}") from exc

        logger.info(
            "Session started",
            extra={
                "browser_pid": browser.pid,
                "watchdog_pid": watchdog.pid,
                "timeout_ms": timeout_ms,
                "proxy": tunnel_state.proxy_url if tunnel_state else None,
            },
        )
        return SessionInfo(
            endpoint=self._browser.endpoint,
            browser_pid=browser.pid,
            watchdog_pid=watchdog.pid,
            timeout_ms=timeout_ms,
            visible=options.profile,
            tunnel=tunnel_state,
        )

    def _prepare_profile(self, options: SessionOptions) -> None:
        profile_dir = self._browser.profile_dir
        if options.reset and not options.profile:
            logger.warning("Ignoring reset because no persistent profile is in use")
        elif options.reset:
            try:
                shutil.rmtree(profile_dir)
                logger.info("Reset automation profile", extra={"path": str(profile_dir)})
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to reset automation profile: %s", exc)
        try:
            profile_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionStartError(
                f"Failed to prepare automation profile {profile_dir}: {exc}"
            ) from exc

    async def _retire_previous_session(self) -> None:
        await self._stop_watchdog(self._read_watchdog_pid())
        self._clear_heartbeat()
        await self._tunnel.stop(silent=True)
        try:
            stopped = await self._browser.terminate_processes()
        except Exception as exc:
            logger.warning("Failed to terminate an existing browser process: %s", exc)
            return
        if stopped:
            await self._sleep(self._settle_delay)

    async def _rollback(self) -> None:
        watchdog_pid = self._read_watchdog_pid()
        for step in (self._browser.terminate_processes, lambda: self._tunnel.stop(silent=True)):
            try:
                await step()
            except Exception as exc:
                logger.warning("Rollback step failed: %s", exc)
        await self._stop_watchdog(watchdog_pid)
        self._clear_heartbeat()

    def _read_watchdog_pid(self) -> int | None:
        try:
            record = self._heartbeat.read()
        except OSError as exc:
            logger.warning("Unable to read session heartbeat: %s", exc)
            return None
        return record.watcher_pid if record else None

    async def _stop_watchdog(self, pid: int | None) -> bool:
        # A recorded watchdog that already exited is expected, not an error.
        if pid is None or pid == os.getpid():
            return False
        try:
            result = await self._processes.terminate(pid)
        except Exception as exc:
            logger.warning("Failed to terminate session watchdog: %s", exc, extra={"pid": pid})
            return False
        return result is not TerminationResult.NOT_FOUND

    def _clear_heartbeat(self) -> None:
        try:
            self._heartbeat.clear()
        except OSError as exc:
            logger.warning("Failed to clear session heartbeat: %s", exc)

    async def stop(self, *, from_watchdog: bool = False) -> StopReport:
        """Tear the session down. Each step is best effort and the whole call is idempotent."""

        report = StopReport()
        watchdog_pid = self._read_watchdog_pid()
        try:
            self._heartbeat.request_shutdown()
        except OSError as exc:
            logger.warning("Failed to signal watchdog shutdown: %s", exc)

        try:
            report.closed_tabs = await self._browser.close_pages()
        except Exception as exc:
            logger.warning("Could not close browser tabs: %s", exc)

        try:
            report.browsers_stopped = await self._browser.terminate_processes()
        except Exception as exc:
            logger.warning("Failed to terminate browser processes: %s", exc)

        report.tunnel_stopped = await self._tunnel.stop(silent=True)

        if not from_watchdog:
            report.watchdog_stopped = await self._stop_watchdog(watchdog_pid)
        self._clear_heartbeat()

        logger.info(
            "Session stopped",
            extra={
                "closed_tabs": report.closed_tabs,
                "browsers_stopped": report.browsers_stopped,
                "tunnel_stopped": report.tunnel_stopped,
                "from_watchdog": from_watchdog,
            },
        )
        return report


__all__ = [
    "SessionError",
    "SessionInfo",
    "SessionOptions",
    "SessionOrchestrator",
    "SessionStartError",
    "StopReport",
]
