"""Offline queue: durable, bounded, age-evicting store of undelivered events.

Entries live under one StateStore key as an ordered list (oldest first).
Every mutation is a single atomic ``update`` of that list.

Replay is single-flight twice over: a non-blocking in-process lock stops
overlapping threads, and a lease key in the store (with a TTL, so a crashed
replayer cannot wedge the queue) stops overlapping processes. Entries are
sent outside any store transaction; the results are merged back by id, so
entries enqueued during a replay are never lost.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from errorferry.contracts.errors import CircuitOpenError
from errorferry.contracts.state import OfflineQueueEntry
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import OfflineSettings
from errorferry.core.store.protocols import OFFLINE_QUEUE_KEY, REPLAY_LEASE_KEY, StateStore

logger = structlog.get_logger(__name__)

PayloadSender = Callable[[dict[str, Any]], object]


@dataclass(frozen=True, slots=True)
class ReplayResult:
    """What one replay pass did.

    Attributes:
        skipped: True when another replay held the single-flight guard
        attempted: Entries handed to the send capability
        delivered: Entries sent successfully and removed
        failed: Entries whose send failed (attempt counter incremented)
        dropped: Entries removed for exceeding max attempts or max age
        interrupted: True when the circuit opened mid-replay
    """

    skipped: bool = False
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    interrupted: bool = False


def _load_entries(raw: list[dict[str, Any]] | None) -> list[OfflineQueueEntry]:
    return [OfflineQueueEntry.from_dict(item) for item in (raw or [])]


def _dump_entries(entries: list[OfflineQueueEntry]) -> list[dict[str, Any]]:
    return [entry.to_dict() for entry in entries]


class OfflineQueue:
    """Bounded queue of undelivered payloads with periodic replay.

    NOTE: Aggregate logging - evictions are logged every _LOG_INTERVAL
    drops instead of per-event, since a dead endpoint evicts on every
    enqueue once the queue is full.

    Example:
        queue = OfflineQueue(settings.offline, store, send=guarded_send)
        queue.enqueue(event.to_payload())
        ...
        queue.replay()   # scheduled every replay_interval_seconds
        queue.cleanup()  # scheduled every cleanup_interval_seconds
    """

    _LOG_INTERVAL = 10

    def __init__(
        self,
        settings: OfflineSettings,
        store: StateStore,
        *,
        send: PayloadSender | None = None,
        clock: Clock | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._send = send
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lease_seconds = lease_seconds if lease_seconds is not None else settings.replay_interval_seconds
        self._replay_lock = threading.Lock()
        self._owner = uuid.uuid4().hex
        self._evicted_count = 0
        self._last_logged_evicted = 0

    # === Queue mutation ===

    def enqueue(self, payload: dict[str, Any]) -> str:
        """Append a payload with attempts=0, evicting the oldest entries beyond max size.

        Returns:
            The new entry's id.
        """
        entry = OfflineQueueEntry(id=uuid.uuid4().hex, payload=payload, enqueued_at=self._clock.time())
        evicted = 0

        def mutate(raw: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
            nonlocal evicted
            entries = _load_entries(raw)
            entries.append(entry)
            entries.sort(key=lambda e: e.enqueued_at)
            overflow = len(entries) - self._settings.max_queue_size
            if overflow > 0:
                evicted = overflow
                entries = entries[overflow:]
            return _dump_entries(entries)

        self._store.update(OFFLINE_QUEUE_KEY, mutate)
        if evicted:
            self._record_evictions(evicted)
        return entry.id

    def _record_evictions(self, count: int) -> None:
        self._evicted_count += count
        if self._evicted_count - self._last_logged_evicted >= self._LOG_INTERVAL:
            logger.warning(
                "Offline queue full - oldest entries evicted",
                evicted_since_last_log=self._evicted_count - self._last_logged_evicted,
                evicted_total=self._evicted_count,
                max_queue_size=self._settings.max_queue_size,
            )
            self._last_logged_evicted = self._evicted_count

    def cleanup(self) -> int:
        """Remove entries older than max_age regardless of attempts. Returns count removed."""
        cutoff = self._clock.time() - self._settings.max_age_seconds
        removed = 0

        def mutate(raw: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
            nonlocal removed
            entries = _load_entries(raw)
            kept = [e for e in entries if e.enqueued_at > cutoff]
            removed = len(entries) - len(kept)
            return _dump_entries(kept)

        self._store.update(OFFLINE_QUEUE_KEY, mutate)
        if removed:
            logger.info("Offline queue cleanup removed expired entries", removed=removed)
        return removed

    def clear(self) -> int:
        removed = len(self)
        self._store.delete(OFFLINE_QUEUE_KEY)
        return removed

    # === Replay ===

    def _acquire_lease(self) -> bool:
        acquired = False

        def mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal acquired
            # The store's TTL expires a lease whose holder died
            if current is not None and current.get("owner") != self._owner:
                return current
            acquired = True
            return {"owner": self._owner, "acquired_at": self._clock.time()}

        self._store.update(REPLAY_LEASE_KEY, mutate, ttl_seconds=self._lease_seconds)
        return acquired

    def _release_lease(self) -> None:
        def mutate(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is not None and current.get("owner") == self._owner:
                return None
            return current

        self._store.update(REPLAY_LEASE_KEY, mutate, ttl_seconds=self._lease_seconds)

    @property
    def replaying(self) -> bool:
        return self._replay_lock.locked()

    def replay(self, send: PayloadSender | None = None) -> ReplayResult:
        """Attempt to resend every queued entry once.

        A call while another replay is in progress (in this process or,
        via the lease, in another one) is a no-op returning ``skipped=True``.

        Raises:
            RuntimeError: If no send capability was provided.
        """
        sender = send or self._send
        if sender is None:
            raise RuntimeError("OfflineQueue.replay() requires a send capability")

        if not self._replay_lock.acquire(blocking=False):
            return ReplayResult(skipped=True)
        try:
            if not self._acquire_lease():
                logger.debug("Offline replay skipped - lease held by another process")
                return ReplayResult(skipped=True)
            try:
                return self._replay_once(sender)
            finally:
                self._release_lease()
        finally:
            self._replay_lock.release()

    def _replay_once(self, sender: PayloadSender) -> ReplayResult:
        cutoff = self._clock.time() - self._settings.max_age_seconds
        snapshot = _load_entries(self._store.get(OFFLINE_QUEUE_KEY))
        delivered: set[str] = set()
        failed: set[str] = set()
        interrupted = False
        attempted = 0

        for entry in snapshot:
            if entry.enqueued_at <= cutoff:
                continue  # Expired; dropped in the merge below
            attempted += 1
            try:
                sender(entry.payload)
            except CircuitOpenError:
                # Not an attempt: the send capability was never invoked
                attempted -= 1
                interrupted = True
                break
            except Exception as e:
                failed.add(entry.id)
                logger.debug("Offline replay send failed", entry_id=entry.id, error=str(e))
            else:
                delivered.add(entry.id)

        dropped = 0

        def merge(raw: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
            nonlocal dropped
            kept: list[OfflineQueueEntry] = []
            for entry in _load_entries(raw):
                if entry.id in delivered:
                    continue
                if entry.id in failed:
                    entry.attempts += 1
                if entry.attempts >= self._settings.max_attempts or entry.enqueued_at <= cutoff:
                    dropped += 1
                    continue
                kept.append(entry)
            return _dump_entries(kept)

        self._store.update(OFFLINE_QUEUE_KEY, merge)
        result = ReplayResult(
            attempted=attempted,
            delivered=len(delivered),
            failed=len(failed),
            dropped=dropped,
            interrupted=interrupted,
        )
        if attempted or dropped:
            logger.info(
                "Offline replay finished",
                attempted=result.attempted,
                delivered=result.delivered,
                failed=result.failed,
                dropped=result.dropped,
                interrupted=result.interrupted,
            )
        return result

    # === Introspection ===

    def entries(self) -> list[OfflineQueueEntry]:
        return _load_entries(self._store.get(OFFLINE_QUEUE_KEY))

    def __len__(self) -> int:
        return len(self.entries())

    def stats(self) -> dict[str, Any]:
        entries = self.entries()
        return {
            "size": len(entries),
            "max_size": self._settings.max_queue_size,
            "oldest_timestamp": min((e.enqueued_at for e in entries), default=None),
            "replaying": self.replaying,
            "evicted_total": self._evicted_count,
        }
