"""Session heartbeat: persisted liveness record and the scoped emitter that refreshes it."""

from .emitter import HeartbeatEmitter, heartbeat
from .models import HeartbeatRecord
from .store import HeartbeatStore, epoch_ms

__all__ = [
    "HeartbeatEmitter",
    "HeartbeatRecord",
    "HeartbeatStore",
    "epoch_ms",
    "heartbeat",
]
