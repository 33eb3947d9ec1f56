"""Launching, probing and stopping the automation browser."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Protocol, Sequence

from playwright.async_api import Browser, Error as PlaywrightError, Playwright, async_playwright

from .config import BrowserToolsSettings
from .process import ProcessHandle, ProcessSupervisor, TerminationResult
from .tunnel import TunnelState

BROWSER_CANDIDATES = (
    "brave-browser",
    "brave",
    "chromium",
    "chromium-browser",
    "google-chrome",
    "google-chrome-stable",
)
MACOS_BRAVE = Path("/Applications/Brave Browser.app/Contents/MacOS/Brave Browser")

logger = logging.getLogger(__name__)


class BrowserNotFoundError(RuntimeError):
    """Raised when no Chromium-family browser executable can be located."""


class BrowserConnectError(RuntimeError):
    """Raised when the DevTools endpoint never accepts a connection."""


def resolve_browser_executable(explicit: str | None = None) -> str:
    if explicit:
        candidate = Path(explicit).expanduser()
        if candidate.is_file():
            return str(candidate)
        found = shutil.which(explicit)
        if found is None:
            raise BrowserNotFoundError(f"Browser executable not found at {explicit}")
        return found

    for name in BROWSER_CANDIDATES:
        found = shutil.which(name)
        if found is not None:
            return found
    if MACOS_BRAVE.is_file():
        return str(MACOS_BRAVE)
    raise BrowserNotFoundError(
        "No Brave/Chromium executable found on PATH; set BROWSER_TOOLS_BROWSER_PATH"
    )


def build_launch_args(
    *,
    profile_dir: Path,
    debug_port: int,
    user_agent: str,
    window_size: str,
    visible: bool = False,
    proxy: TunnelState | None = None,
) -> list[str]:
    args = [
        f"--remote-debugging-port={debug_port}",
        f"--user-data-dir={profile_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-dev-shm-usage",
        f"--user-agent={user_agent}",
    ]
    if proxy is not None:
        args.append(f"--proxy-server={proxy.proxy_url}")
    if not visible:
        args.extend(["--incognito", "--headless=new"])
    args.append(f"--window-size={window_size}")
    return args


class BrowserConnection(Protocol):
    async def page_count(self) -> int:
        ...

    async def close_pages(self) -> int:
        ...

    async def disconnect(self) -> None:
        ...


class BrowserDriver(Protocol):
    async def connect(self, endpoint: str, *, timeout_ms: int) -> BrowserConnection:
        ...


class PlaywrightConnection:
    """A CDP attachment; disconnecting leaves the browser process running."""

    def __init__(self, playwright: Playwright, browser: Browser) -> None:
        self._playwright = playwright
        self._browser = browser

    def _pages(self):
        return [page for context in self._browser.contexts for page in context.pages]

    async def page_count(self) -> int:
        return len(self._pages())

    async def close_pages(self) -> int:
        closed = 0
        for page in self._pages():
            try:
                await page.close()
                closed += 1
            except PlaywrightError as exc:
                logger.warning("Unable to close a tab: %s", exc)
        return closed

    async def disconnect(self) -> None:
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


class PlaywrightDriver:
    async def connect(self, endpoint: str, *, timeout_ms: int) -> PlaywrightConnection:
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.connect_over_cdp(endpoint, timeout=timeout_ms)
        except BaseException:
            await playwright.stop()
            raise
        return PlaywrightConnection(playwright, browser)


class BrowserController:
    """The browser side of a session: one profile directory, one debug port."""

    def __init__(
        self,
        settings: BrowserToolsSettings,
        processes: ProcessSupervisor,
        *,
        driver: BrowserDriver | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        executable: str | None = None,
    ) -> None:
        self._settings = settings
        self._processes = processes
        self._driver = driver or PlaywrightDriver()
        self._sleep = sleep or asyncio.sleep
        self._executable = executable

    @property
    def profile_dir(self) -> Path:
        return self._settings.profile_dir

    @property
    def endpoint(self) -> str:
        return self._settings.debug_endpoint

    def owns(self, cmdline: Sequence[str]) -> bool:
        """Whether a process command line belongs to this session's profile."""

        marker = f"--user-data-dir={self.profile_dir}"
        return any(arg == marker for arg in cmdline)

    def find_processes(self) -> list[int]:
        return self._processes.find(self.owns)

    async def terminate_processes(self) -> int:
        """Terminate every browser process using the profile; returns how many were signalled."""

        pids = self.find_processes()
        if not pids:
            return 0
        results = await asyncio.gather(*(self._processes.terminate(pid) for pid in pids))
        return sum(1 for result in results if result is not TerminationResult.NOT_FOUND)

    def launch(self, *, visible: bool = False, proxy: TunnelState | None = None) -> ProcessHandle:
        executable = self._executable or resolve_browser_executable(self._settings.browser_path)
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        args = build_launch_args(
            profile_dir=self.profile_dir,
            debug_port=self._settings.debug_port,
            user_agent=self._settings.user_agent,
            window_size=self._settings.window_size,
            visible=visible,
            proxy=proxy,
        )
        handle = self._processes.spawn([executable, *args])
        logger.info(
            "Browser launched",
            extra={"pid": handle.pid, "executable": executable, "visible": visible},
        )
        return handle

    async def wait_until_ready(self, *, attempts: int = 30, interval: float = 0.5) -> int:
        """Retry connecting to the DevTools endpoint; returns the open page count."""

        last_error: Exception | None = None
        for _ in range(attempts):
            try:
                connection = await self._driver.connect(self.endpoint, timeout_ms=2_000)
            except (PlaywrightError, OSError, asyncio.TimeoutError) as exc:
                last_error = exc
                await self._sleep(interval)
                continue
            try:
                return await connection.page_count()
            finally:
                await connection.disconnect()
        raise BrowserConnectError(
            f"Failed to connect to the browser at {self.endpoint}: {last_error}"
        )

    async def close_pages(self) -> int:
        """Close every open tab; zero when the browser is not reachable."""

        try:
            connection = await self._driver.connect(self.endpoint, timeout_ms=2_000)
        except (PlaywrightError, OSError, asyncio.TimeoutError) as exc:
            logger.debug("Browser not reachable; no tabs to close", extra={"error": str(exc)})
            return 0
        try:
            return await connection.close_pages()
        finally:
            await connection.disconnect()


__all__ = [
    "BrowserConnectError",
    "BrowserController",
    "BrowserNotFoundError",
    "PlaywrightDriver",
    "build_launch_args",
    "resolve_browser_executable",
]
