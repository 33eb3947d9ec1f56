"""SSH SOCKS tunnel supervision."""

from .config import DEFAULT_TUNNEL_CONFIG, TunnelConfig, TunnelConfigError, load_tunnel_config
from .models import TunnelState
from .supervisor import TunnelError, TunnelStartError, TunnelSupervisor

__all__ = [
    "DEFAULT_TUNNEL_CONFIG",
    "TunnelConfig",
    "TunnelConfigError",
    "TunnelError",
    "TunnelStartError",
    "TunnelState",
    "TunnelSupervisor",
    "load_tunnel_config",
]
