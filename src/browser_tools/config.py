"""Configuration management for browser-tools."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SESSION_TIMEOUT_MS = 15 * 60 * 1000
DEFAULT_HEARTBEAT_INTERVAL_MS = 1000
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)

HEARTBEAT_FILENAME = "session-heartbeat.json"
TUNNEL_STATE_FILENAME = "ssh-proxy.json"
PROFILE_DIRNAME = "automation-profile"


class BrowserToolsSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    cache_root: Path = Field(
        default=Path("~/.browser-tools"), validation_alias="BROWSER_TOOLS_CACHE"
    )
    session_timeout_ms: int | None = Field(
        default=None, validation_alias="BROWSER_TOOLS_SESSION_TIMEOUT_MS"
    )
    session_timeout_minutes: float | None = Field(
        default=None, validation_alias="BROWSER_TOOLS_SESSION_TIMEOUT_MINUTES"
    )
    heartbeat_interval_ms: int = Field(
        default=DEFAULT_HEARTBEAT_INTERVAL_MS,
        validation_alias="BROWSER_TOOLS_HEARTBEAT_INTERVAL_MS",
    )
    watchdog_debug: bool = Field(default=False, validation_alias="BROWSER_TOOLS_WATCHDOG_DEBUG")
    log_level: str = Field(default="INFO", validation_alias="BROWSER_TOOLS_LOG_LEVEL")
    ssh_proxy_config: Path | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BROWSER_TOOLS_SSH_PROXY_CONFIG", "BROWSER_TOOLS_SSH_PROXY_TEST_CONFIG"
        ),
    )
    browser_path: str | None = Field(default=None, validation_alias="BROWSER_TOOLS_BROWSER_PATH")
    debug_port: int = Field(default=9222, validation_alias="BROWSER_TOOLS_DEBUG_PORT")
    window_size: str = Field(default="2560,1440", validation_alias="BROWSER_TOOLS_WINDOW_SIZE")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, validation_alias="BROWSER_TOOLS_USER_AGENT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BROWSER_TOOLS_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("session_timeout_ms", "session_timeout_minutes", mode="before")
    @classmethod
    def _blank_timeout_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_timeout_ms", "session_timeout_minutes")
    @classmethod
    def _validate_timeout(cls, value):
        if value is not None and value <= 0:
            raise ValueError("Session timeout must be greater than zero")
        return value

    @field_validator("heartbeat_interval_ms", mode="before")
    @classmethod
    def _fallback_heartbeat_interval(cls, value):
        try:
            interval = int(value)
        except (TypeError, ValueError):
            return DEFAULT_HEARTBEAT_INTERVAL_MS
        return interval if interval > 0 else DEFAULT_HEARTBEAT_INTERVAL_MS

    @field_validator("debug_port")
    @classmethod
    def _validate_debug_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("BROWSER_TOOLS_DEBUG_PORT must be between 1 and 65535")
        return value

    @field_validator("user_agent", mode="before")
    @classmethod
    def _default_user_agent(cls, value):
        if value is None or not str(value).strip():
            return DEFAULT_USER_AGENT
        return str(value).strip()

    @property
    def cache_dir(self) -> Path:
        return self.cache_root.expanduser() / ".cache"

    @property
    def heartbeat_path(self) -> Path:
        return self.cache_dir / HEARTBEAT_FILENAME

    @property
    def tunnel_state_path(self) -> Path:
        return self.cache_dir / TUNNEL_STATE_FILENAME

    @property
    def profile_dir(self) -> Path:
        return self.cache_dir / PROFILE_DIRNAME

    @property
    def debug_endpoint(self) -> str:
        return f"http://localhost:{self.debug_port}"

    def resolve_session_timeout_ms(self) -> int:
        """Return the idle budget, preferring the millisecond override over minutes."""

        if self.session_timeout_ms is not None:
            return self.session_timeout_ms
        if self.session_timeout_minutes is not None:
            return max(1, int(self.session_timeout_minutes * 60_000))
        return DEFAULT_SESSION_TIMEOUT_MS


def configure_logging(level: str, filename: Path | None = None) -> None:
    """Configure root logging for a browser-tools entry point."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        filename=str(filename) if filename is not None else None,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@lru_cache(maxsize=1)
def get_settings() -> BrowserToolsSettings:
    """Return cached settings instance."""

    settings = BrowserToolsSettings()
    settings.cache_root = settings.cache_root.expanduser().resolve()
    if settings.ssh_proxy_config is not None:
        settings.ssh_proxy_config = settings.ssh_proxy_config.expanduser().resolve()
    return settings


__all__ = [
    "BrowserToolsSettings",
    "DEFAULT_SESSION_TIMEOUT_MS",
    "configure_logging",
    "get_settings",
]
