"""Key-value state store with a schema-version guard.

Each key is one JSON file under the state directory, wrapped in an envelope:

    {"version": 1, "saved_at": 1718000000.0, "data": ...}

A file whose version is missing or different is discarded on load. There is
no migration path: stale state is dropped and the caller starts fresh.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

BATCH_STATE_KEY = "batch_state"
HISTORY_KEY = "execution_history"


class KeyValueStore:
    """JSON-file store. With no directory it keeps everything in memory."""

    def __init__(self, state_dir: Path | None = None, version: int = SCHEMA_VERSION):
        self._state_dir = state_dir
        self._version = version
        self._memory: dict[str, str] = {}
        self._lock = threading.Lock()

        if state_dir:
            state_dir.mkdir(parents=True, exist_ok=True)

    def load(self, key: str) -> tuple[Any, float] | None:
        """Return (data, saved_at) for a key, or None if absent or stale."""
        raw = self._read(key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable state for '{key}': {e}")
            self.delete(key)
            return None

        if not isinstance(envelope, dict) or envelope.get("version") != self._version:
            found = envelope.get("version") if isinstance(envelope, dict) else None
            logger.warning(f"Discarding state for '{key}': schema version {found!r} != {self._version}")
            self.delete(key)
            return None

        return envelope.get("data"), float(envelope.get("saved_at", 0))

    def get(self, key: str, default: Any = None) -> Any:
        loaded = self.load(key)
        return loaded[0] if loaded else default

    def set(self, key: str, data: Any):
        envelope = {"version": self._version, "saved_at": time.time(), "data": data}
        self._write(key, json.dumps(envelope))

    def delete(self, key: str):
        with self._lock:
            self._memory.pop(key, None)
            if self._state_dir:
                path = self._path(key)
                if path.exists():
                    path.unlink()

    def keys(self) -> list[str]:
        if self._state_dir:
            return sorted(p.stem for p in self._state_dir.glob("*.json"))
        return sorted(self._memory)

    def _path(self, key: str) -> Path:
        return self._state_dir / f"{key}.json"

    def _read(self, key: str) -> str | None:
        with self._lock:
            if not self._state_dir:
                return self._memory.get(key)
            path = self._path(key)
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def _write(self, key: str, raw: str):
        with self._lock:
            if not self._state_dir:
                self._memory[key] = raw
                return
            path = self._path(key)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(raw, encoding="utf-8")
            tmp.replace(path)
