"""Persistence for the small JSON records shared between browser-tools processes."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol


class StateRepository(Protocol):
    """Minimal load/save/clear API used by the heartbeat store and tunnel supervisor."""

    def load(self) -> dict[str, Any] | None:
        ...

    def save(self, payload: dict[str, Any]) -> None:
        ...

    def clear(self) -> None:
        ...


class JsonStateFile:
    """A JSON document at a well-known path.

    Reads are always fresh; a missing or unparsable file reads as ``None``.
    Writes replace the file atomically so concurrent readers never see a
    partial document.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> dict[str, Any] | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def save(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class MemoryStateFile:
    """In-memory repository used by tests in place of a JSON file."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self._payload = dict(payload) if payload is not None else None
        self.saves = 0

    def load(self) -> dict[str, Any] | None:
        return dict(self._payload) if self._payload is not None else None

    def save(self, payload: dict[str, Any]) -> None:
        self._payload = json.loads(json.dumps(payload))
        self.saves += 1

    def clear(self) -> None:
        self._payload = None


__all__ = ["JsonStateFile", "MemoryStateFile", "StateRepository"]
