"""Batcher: aggregates outbound payloads and sends them as one unit.

A flush is triggered by whichever comes first:
- the buffer holds ``max_size`` payloads
- the estimated serialized batch reaches ``max_payload_bytes``
- ``max_wait_seconds`` have passed since the first buffered payload
  (checked by ``flush_if_due``, which the orchestrator schedules)
- explicit ``flush()`` (shutdown)

Flush is atomic: the buffer is swapped out under the lock before the send
is attempted, so a failed send never re-enters the buffer. Failed batches
are handed to ``on_failure`` with the original payloads, one per event.

Every delivered or failed batch is appended to a short persisted history
(the last ``BATCH_HISTORY_LIMIT`` batches) for operators.
"""

from __future__ import annotations

import json
import secrets
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import BatchSettings
from errorferry.core.store.protocols import BATCH_COUNTER_KEY, BATCH_HISTORY_KEY, StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BatchSender = Callable[[dict[str, Any]], object]
BatchFailureHandler = Callable[[list[dict[str, Any]], BaseException], None]
BatchSuccessHandler = Callable[[list[dict[str, Any]]], None]

# Bytes reserved for the wrapper keys (batch, batchId, count, timestamp)
_WRAPPER_OVERHEAD = 128

# Most recent batches kept in the persisted history
BATCH_HISTORY_LIMIT = 10


@dataclass(slots=True)
class BatchBuffer:
    """Pending payloads plus the time the first one arrived."""

    items: list[dict[str, Any]] = field(default_factory=list)
    sizes: list[int] = field(default_factory=list)
    created_at: float | None = None  # monotonic seconds

    @property
    def estimated_size(self) -> int:
        if not self.items:
            return 0
        # One comma between consecutive items
        return _WRAPPER_OVERHEAD + sum(self.sizes) + len(self.sizes) - 1


def split(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most size."""
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class Batcher:
    """Size/byte/age-triggered batching around a send capability.

    Thread Safety:
        ``add``/``flush``/``flush_if_due`` may be called from any thread.
        The buffer swap happens under a lock; the send itself runs outside
        it so a slow endpoint never blocks producers.

    Example:
        batcher = Batcher(settings.batch, store, send=deliver, on_failure=queue_each)
        batcher.add(event.to_payload())
        ...
        batcher.flush()  # on shutdown
    """

    def __init__(
        self,
        settings: BatchSettings,
        store: StateStore,
        *,
        send: BatchSender,
        on_failure: BatchFailureHandler | None = None,
        on_success: BatchSuccessHandler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._send = send
        self._on_failure = on_failure
        self._on_success = on_success
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lock = threading.Lock()
        self._buffer = BatchBuffer()
        self._batches_sent = 0
        self._batches_failed = 0

    def _next_batch_id(self) -> str:
        counter = self._store.update(BATCH_COUNTER_KEY, lambda current: int(current or 0) + 1)
        return f"batch_{int(self._clock.time())}_{counter}_{secrets.token_hex(4)}"

    def _should_flush(self) -> bool:
        buffer = self._buffer
        if len(buffer.items) >= self._settings.max_size:
            return True
        return buffer.estimated_size >= self._settings.max_payload_bytes

    def _swap(self) -> BatchBuffer | None:
        """Detach the current buffer. Caller must hold the lock."""
        if not self._buffer.items:
            return None
        detached, self._buffer = self._buffer, BatchBuffer()
        return detached

    def add(self, payload: dict[str, Any]) -> str | None:
        """Buffer a payload, flushing if a size trigger fires.

        Returns:
            The batch id if this add triggered a flush, else None.
        """
        size = len(json.dumps(payload, default=str).encode("utf-8"))
        with self._lock:
            if self._buffer.created_at is None:
                self._buffer.created_at = self._clock.monotonic()
            self._buffer.items.append(payload)
            self._buffer.sizes.append(size)
            detached = self._swap() if self._should_flush() else None
        if detached is None:
            return None
        return self._deliver(detached, trigger="size")

    def flush(self) -> str | None:
        """Send whatever is buffered now. Returns the batch id, or None if empty."""
        with self._lock:
            detached = self._swap()
        if detached is None:
            return None
        return self._deliver(detached, trigger="explicit")

    def flush_if_due(self) -> str | None:
        """Flush if the oldest buffered payload has waited max_wait_seconds."""
        with self._lock:
            created = self._buffer.created_at
            if created is None or self._clock.monotonic() - created < self._settings.max_wait_seconds:
                return None
            detached = self._swap()
        if detached is None:
            return None
        return self._deliver(detached, trigger="age")

    def _deliver(self, buffer: BatchBuffer, *, trigger: str) -> str:
        batch_id = self._next_batch_id()
        batch = {
            "batch": True,
            "errors": buffer.items,
            "batchId": batch_id,
            "count": len(buffer.items),
            "timestamp": self._clock.now().isoformat(),
        }
        try:
            self._send(batch)
        except Exception as e:
            self._batches_failed += 1
            logger.warning(
                "Batch send failed",
                batch_id=batch_id,
                count=len(buffer.items),
                trigger=trigger,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._record(batch_id, len(buffer.items), status="failed", trigger=trigger)
            if self._on_failure is not None:
                self._on_failure(buffer.items, e)
            return batch_id

        self._batches_sent += 1
        logger.debug("Batch sent", batch_id=batch_id, count=len(buffer.items), trigger=trigger)
        self._record(batch_id, len(buffer.items), status="sent", trigger=trigger)
        if self._on_success is not None:
            self._on_success(buffer.items)
        return batch_id

    def _record(self, batch_id: str, count: int, *, status: str, trigger: str) -> None:
        entry = {
            "batch_id": batch_id,
            "count": count,
            "status": status,
            "trigger": trigger,
            "sent_at": self._clock.now().isoformat(),
        }

        def append(current: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
            return [*(current or []), entry][-BATCH_HISTORY_LIMIT:]

        self._store.update(BATCH_HISTORY_KEY, append)

    def history(self) -> list[dict[str, Any]]:
        """Most recent batches, oldest first: batch_id, count, status, trigger, sent_at."""
        return list(self._store.get(BATCH_HISTORY_KEY) or [])

    def clear(self) -> int:
        """Drop buffered payloads without sending. Returns how many were dropped."""
        with self._lock:
            dropped = len(self._buffer.items)
            self._buffer = BatchBuffer()
        if dropped:
            logger.warning("Batch buffer cleared", dropped=dropped)
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer.items)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            pending = len(self._buffer.items)
            created = self._buffer.created_at
            estimated = self._buffer.estimated_size
        until_flush = 0.0
        if created is not None:
            until_flush = max(0.0, self._settings.max_wait_seconds - (self._clock.monotonic() - created))
        return {
            "current_batch_size": pending,
            "has_pending_batch": pending > 0,
            "time_until_flush": until_flush,
            "estimated_payload_size": estimated,
            "batch_counter": int(self._store.get(BATCH_COUNTER_KEY) or 0),
            "batches_sent": self._batches_sent,
            "batches_failed": self._batches_failed,
            "recent_batches": self.history(),
        }
