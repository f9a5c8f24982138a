"""In-process state store."""

from __future__ import annotations

import json
import threading
from typing import Any

from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.store.protocols import JSONValue, Mutator


def _copy(value: JSONValue) -> JSONValue:
    # JSON round-trip: callers never share mutable structure with the store,
    # and anything the database backend could not persist fails here too.
    return json.loads(json.dumps(value))


class MemoryStateStore:
    """Thread-safe dict-backed StateStore with lazy TTL expiry.

    State lives only as long as the process. Suitable for single-process
    hosts and for tests.

    Example:
        store = MemoryStateStore(clock=MockClock())
        store.update("counter", lambda v: (v or 0) + 1)
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lock = threading.RLock()
        # key -> (value, expires_at epoch seconds or None)
        self._entries: dict[str, tuple[JSONValue, float | None]] = {}

    def _live_value(self, key: str) -> JSONValue | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock.time() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock.time() + ttl_seconds

    def get(self, key: str) -> JSONValue | None:
        with self._lock:
            value = self._live_value(key)
            return None if value is None else _copy(value)

    def set(self, key: str, value: JSONValue, ttl_seconds: float | None = None) -> None:
        with self._lock:
            self._entries[key] = (_copy(value), self._expiry(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def update(self, key: str, mutate: Mutator, ttl_seconds: float | None = None) -> JSONValue:
        with self._lock:
            current = self._live_value(key)
            new_value = _copy(mutate(None if current is None else _copy(current)))
            self._entries[key] = (new_value, self._expiry(ttl_seconds))
            return _copy(new_value)

    def keys(self) -> list[str]:
        """Return the keys that are currently live."""
        with self._lock:
            return [key for key in list(self._entries) if self._live_value(key) is not None]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self.keys())

    def __repr__(self) -> str:
        return f"MemoryStateStore(keys={len(self)})"

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of every live entry, for diagnostics."""
        with self._lock:
            return {key: _copy(value) for key in list(self._entries) if (value := self._live_value(key)) is not None}
