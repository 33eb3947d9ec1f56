"""Lifecycle of the SSH SOCKS proxy subprocess."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from ..heartbeat.store import epoch_ms
from ..process import ProcessHandle, ProcessSupervisor, TerminationResult
from ..state import JsonStateFile, StateRepository
from .config import TunnelConfig, load_tunnel_config
from .models import TunnelState

logger = logging.getLogger(__name__)


class TunnelError(RuntimeError):
    """Base class for tunnel supervisor errors."""


class TunnelStartError(TunnelError):
    """Raised when the proxy does not come up; nothing is left running."""


async def probe_port(host: str, port: int, timeout: float) -> None:
    """Open and immediately close a TCP connection; raises ``OSError`` or ``TimeoutError``."""

    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


class TunnelSupervisor:
    """Start, track and stop the SOCKS proxy process.

    The running tunnel is described by a single persisted :class:`TunnelState`
    written only once the proxy accepts connections and removed before any
    attempt to kill it.
    """

    def __init__(
        self,
        repository: StateRepository,
        processes: ProcessSupervisor,
        config: TunnelConfig | None = None,
        *,
        config_path: Path | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        probe: Callable[[str, int, float], Awaitable[None]] | None = None,
        stop_attempts: int = 10,
        stop_interval: float = 0.1,
        ready_grace: float = 0.1,
    ) -> None:
        self._repository = repository
        self._config = config
        self._config_path = config_path
        self._processes = processes
        self._clock = clock or epoch_ms
        self._sleep = sleep or asyncio.sleep
        self._probe = probe or probe_port
        self._stop_attempts = stop_attempts
        self._stop_interval = stop_interval
        self._ready_grace = ready_grace

    @classmethod
    def at_path(
        cls, path: Path, processes: ProcessSupervisor, *, config_path: Path | None = None
    ) -> "TunnelSupervisor":
        return cls(JsonStateFile(path), processes, config_path=config_path)

    @property
    def config(self) -> TunnelConfig:
        """The launch configuration, loaded from the override file on first use."""

        if self._config is None:
            self._config = load_tunnel_config(self._config_path)
        return self._config

    def read_state(self) -> TunnelState | None:
        payload = self._repository.load()
        if payload is None:
            return None
        return TunnelState.from_dict(payload)

    async def start(self) -> TunnelState:
        """Launch the proxy and return once its port accepts connections."""

        config = self.config
        if self._repository.load() is not None:
            await self.stop(silent=True)

        try:
            handle = self._processes.spawn(config.command)
        except OSError as exc:
            raise TunnelStartError(f"SSH proxy failed to start: {exc}") from exc

        try:
            await self._wait_until_listening(handle)
            state = TunnelState(
                pid=handle.pid,
                host=config.local_host,
                port=config.local_port,
                command=tuple(config.command),
                started_at=self._clock(),
            )
            self._repository.save(state.to_dict())
        except TunnelStartError:
            await self._discard(handle)
            raise
        except asyncio.CancelledError:
            await self._discard(handle)
            raise
        except Exception as exc:
            await self._discard(handle)
            raise TunnelStartError(f"SSH proxy failed to start: {exc}") from exc

        logger.info(
            "SSH proxy ready",
            extra={"pid": state.pid, "host": state.host, "port": state.port},
        )
        return state

    async def _wait_until_listening(self, handle: ProcessHandle) -> None:
        config = self.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.ready_timeout_ms / 1000
        last_error: BaseException | None = None

        while True:
            self._raise_if_exited(handle)
            try:
                await self._probe(
                    config.local_host, config.local_port, config.connect_timeout_ms / 1000
                )
            except (OSError, asyncio.TimeoutError) as exc:
                last_error = exc
            else:
                # Something else may own the port; our process must still be up
                # once a bind failure would have surfaced.
                self._raise_if_exited(handle)
                await self._sleep(self._ready_grace)
                self._raise_if_exited(handle)
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                reason = f": {last_error}" if last_error else ""
                raise TunnelStartError(
                    "SSH proxy failed to start: timed out waiting for "
                    f"{config.local_host}:{config.local_port}{reason}"
                )
            await self._sleep(min(config.probe_interval_ms / 1000, remaining))

    @staticmethod
    def _raise_if_exited(handle: ProcessHandle) -> None:
        returncode = handle.poll()
        if returncode is not None:
            raise TunnelStartError(
                f"SSH proxy failed to start: process exited with code {returncode}"
            )

    async def _discard(self, handle: ProcessHandle) -> None:
        if handle.poll() is not None:
            return
        try:
            await self._processes.terminate(
                handle.pid, attempts=self._stop_attempts, interval=self._stop_interval
            )
        except Exception as exc:
            logger.warning(
                "Failed to terminate SSH proxy after failed start",
                extra={"pid": handle.pid, "error": str(exc)},
            )
        handle.poll()

    async def stop(self, *, silent: bool = False) -> bool:
        """Stop the recorded proxy. Returns ``False`` when there was nothing to stop.

        Never raises; failures are logged unless ``silent``.
        """

        try:
            payload = self._repository.load()
            self._repository.clear()
        except OSError as exc:
            if not silent:
                logger.warning("Failed to clear SSH proxy state: %s", exc)
            return False

        state = TunnelState.from_dict(payload) if payload is not None else None
        if state is None:
            return False

        try:
            result = await self._processes.terminate(
                state.pid, attempts=self._stop_attempts, interval=self._stop_interval
            )
        except Exception as exc:
            if not silent:
                logger.warning(
                    "Failed to terminate SSH proxy: %s", exc, extra={"pid": state.pid}
                )
            return False

        if result is TerminationResult.NOT_FOUND:
            logger.debug("SSH proxy already gone", extra={"pid": state.pid})
            return False
        logger.info("SSH proxy stopped", extra={"pid": state.pid, "result": result.value})
        return True


__all__ = ["TunnelError", "TunnelStartError", "TunnelSupervisor", "probe_port"]
