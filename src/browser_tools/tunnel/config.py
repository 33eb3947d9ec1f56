"""SSH SOCKS tunnel configuration and override loading."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class TunnelConfigError(RuntimeError):
    """Raised when the tunnel override file cannot be loaded."""


class TunnelConfig(BaseModel):
    """How to launch the SOCKS proxy and where it will listen."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    command: tuple[str, ...] = Field(
        ..., description="Executable and arguments; must keep running while the proxy is up."
    )
    local_host: str = Field(default="127.0.0.1", alias="localHost")
    local_port: int = Field(default=1080, alias="localPort", gt=0, lt=65536)
    ready_timeout_ms: int = Field(default=10_000, alias="readyTimeoutMs", gt=0)
    probe_interval_ms: int = Field(default=250, alias="probeIntervalMs", gt=0)
    connect_timeout_ms: int = Field(default=1_000, alias="connectTimeoutMs", gt=0)

    @field_validator("command", mode="before")
    @classmethod
    def _ensure_command(cls, value):
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise TypeError("command must be a list of strings")
        parts = tuple(str(part) for part in value)
        if not parts or not parts[0].strip():
            raise ValueError("command must not be empty")
        return parts

    @field_validator("local_host")
    @classmethod
    def _normalize_host(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("localHost must not be empty")
        return normalized


DEFAULT_TUNNEL_CONFIG = TunnelConfig(
    command=(
        "ssh",
        "-N",
        "-o",
        "ExitOnForwardFailure=yes",
        "-o",
        "ServerAliveInterval=30",
        "-o",
        "ServerAliveCountMax=3",
        "-D",
        "127.0.0.1:1080",
        "proxy-exit",
    ),
    local_host="127.0.0.1",
    local_port=1080,
    ready_timeout_ms=10_000,
)


def load_tunnel_config(path: Path | None = None) -> TunnelConfig:
    """Return the override at ``path`` (YAML or JSON) or the built-in default."""

    if path is None:
        return DEFAULT_TUNNEL_CONFIG

    override = Path(path)
    try:
        document = yaml.safe_load(override.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise TunnelConfigError(f"Failed to load SSH proxy override config {override}: {exc}") from exc

    if not isinstance(document, dict):
        raise TunnelConfigError(f"SSH proxy override config {override} must be a mapping")

    try:
        return TunnelConfig.model_validate(document)
    except ValidationError as exc:
        raise TunnelConfigError(f"Invalid SSH proxy override config {override}: {exc}") from exc


__all__ = ["DEFAULT_TUNNEL_CONFIG", "TunnelConfig", "TunnelConfigError", "load_tunnel_config"]
