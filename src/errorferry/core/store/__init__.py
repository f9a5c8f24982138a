"""Persistent state stores.

Exports:
- StateStore: Protocol every backend implements
- MemoryStateStore: In-process backend
- DatabaseStateStore: SQLAlchemy backend shared across processes
- create_store: Build the backend named in StoreSettings
"""

from errorferry.core.clock import Clock
from errorferry.core.config import StoreSettings
from errorferry.core.store.database import DatabaseStateStore
from errorferry.core.store.memory import MemoryStateStore
from errorferry.core.store.protocols import (
    BATCH_COUNTER_KEY,
    BATCH_HISTORY_KEY,
    CIRCUIT_BREAKER_KEY,
    MONITOR_METRICS_KEY,
    OFFLINE_QUEUE_KEY,
    QUOTA_KEY,
    RATE_LIMITER_KEY,
    REPLAY_LEASE_KEY,
    StateStore,
)


def create_store(settings: StoreSettings, *, clock: Clock | None = None) -> StateStore:
    """Create the state store backend selected by configuration."""
    if settings.backend == "database":
        # StoreSettings guarantees url is set for the database backend
        assert settings.url is not None
        return DatabaseStateStore.from_url(settings.url, clock=clock)
    return MemoryStateStore(clock=clock)


__all__ = [
    "BATCH_COUNTER_KEY",
    "BATCH_HISTORY_KEY",
    "CIRCUIT_BREAKER_KEY",
    "MONITOR_METRICS_KEY",
    "OFFLINE_QUEUE_KEY",
    "QUOTA_KEY",
    "RATE_LIMITER_KEY",
    "REPLAY_LEASE_KEY",
    "DatabaseStateStore",
    "MemoryStateStore",
    "StateStore",
    "create_store",
]
