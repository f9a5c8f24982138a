"""Persistent state store contract.

Stateful pipeline components (quota tracker, rate limiter, circuit breaker,
offline queue, batch counter and history, self-monitor) keep their
counters behind this interface so the storage backend can be swapped
without touching them.

Values are plain JSON-compatible structures. Components never hold on to
the object returned by ``get``; the store hands out copies.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

JSONValue = Any
Mutator = Callable[[JSONValue | None], JSONValue]

# Keys owned by the pipeline components. One key per component keeps each
# component's read-modify-write independent of the others.
QUOTA_KEY = "quota"
RATE_LIMITER_KEY = "rate_limiter"
CIRCUIT_BREAKER_KEY = "circuit_breaker"
OFFLINE_QUEUE_KEY = "offline_queue"
REPLAY_LEASE_KEY = "offline_queue:replay_lease"
BATCH_COUNTER_KEY = "batch_counter"
BATCH_HISTORY_KEY = "batch_history"
MONITOR_METRICS_KEY = "monitor_metrics"


@runtime_checkable
class StateStore(Protocol):
    """Key/value store with expiry and an atomic read-modify-write.

    ``update`` is the only mutation path used for decisions: the mutator
    receives the current value (None when absent or expired) and returns
    the new value, and no other ``update`` of the same key may interleave.
    Backends implement this with a lock, a transaction, or both.
    """

    def get(self, key: str) -> JSONValue | None:
        """Return a copy of the value for key, or None if absent or expired."""
        ...

    def set(self, key: str, value: JSONValue, ttl_seconds: float | None = None) -> None:
        """Store value under key, expiring after ttl_seconds (None = never)."""
        ...

    def delete(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""
        ...

    def update(self, key: str, mutate: Mutator, ttl_seconds: float | None = None) -> JSONValue:
        """Atomically replace the value for key with ``mutate(current)``.

        Returns:
            The value that was stored.

        Raises:
            StoreError: If the backend cannot complete the operation.
        """
        ...
