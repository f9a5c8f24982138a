"""Persisted state records for the stateful pipeline components.

Each record is owned by exactly one component and crosses the state store
boundary as a plain JSON-compatible dict via ``to_dict()`` / ``from_dict()``.
Inside the store's atomic ``update`` the owning component mutates the typed
record, never the raw dict.

``from_dict`` accepts ``None`` (key absent or expired) and returns the
initial state, so a fresh store and an expired one behave identically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from errorferry.contracts.enums import CircuitState


@dataclass(slots=True)
class QuotaState:
    """Volume counters for the quota tracker.

    Attributes:
        daily_count: Events recorded since last_reset_date began
        monthly_count: Events recorded since last_reset_month began
        total_bytes: Payload bytes recorded this month
        burst_timestamps: Epoch seconds of recent sends (burst window)
        last_reset_date: ``YYYY-MM-DD`` of the day the daily counter covers
        last_reset_month: ``YYYY-MM`` of the month the monthly counter covers
    """

    last_reset_date: str
    last_reset_month: str
    daily_count: int = 0
    monthly_count: int = 0
    total_bytes: int = 0
    burst_timestamps: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_count": self.daily_count,
            "monthly_count": self.monthly_count,
            "total_bytes": self.total_bytes,
            "burst_timestamps": list(self.burst_timestamps),
            "last_reset_date": self.last_reset_date,
            "last_reset_month": self.last_reset_month,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None, *, date_key: str, month_key: str) -> QuotaState:
        if raw is None:
            return cls(last_reset_date=date_key, last_reset_month=month_key)
        return cls(
            daily_count=int(raw["daily_count"]),
            monthly_count=int(raw["monthly_count"]),
            total_bytes=int(raw["total_bytes"]),
            burst_timestamps=[float(ts) for ts in raw["burst_timestamps"]],
            last_reset_date=str(raw["last_reset_date"]),
            last_reset_month=str(raw["last_reset_month"]),
        )


@dataclass(slots=True)
class RateLimiterState:
    """Sliding send window plus last-seen time per error fingerprint."""

    request_timestamps: list[float] = field(default_factory=list)
    fingerprints: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_timestamps": list(self.request_timestamps),
            "fingerprints": dict(self.fingerprints),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RateLimiterState:
        if raw is None:
            return cls()
        return cls(
            request_timestamps=[float(ts) for ts in raw["request_timestamps"]],
            fingerprints={str(k): float(v) for k, v in raw["fingerprints"].items()},
        )


@dataclass(slots=True)
class CircuitBreakerState:
    """Circuit breaker state machine plus its rolling outcome window.

    Attributes:
        state: Current circuit state
        state_changed_at: Epoch seconds of the last transition
        failure_count: Failures since the circuit last closed
        success_count: Successes since the state was last reset
        last_failure_time: Epoch seconds of the most recent failure
        window: (epoch seconds, succeeded) per recorded outcome, pruned to
            the monitoring period on every write
    """

    state_changed_at: float
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    window: list[tuple[float, bool]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "state_changed_at": self.state_changed_at,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "window": [[ts, ok] for ts, ok in self.window],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None, *, now: float) -> CircuitBreakerState:
        if raw is None:
            return cls(state_changed_at=now)
        last_failure = raw["last_failure_time"]
        return cls(
            state=CircuitState(raw["state"]),
            state_changed_at=float(raw["state_changed_at"]),
            failure_count=int(raw["failure_count"]),
            success_count=int(raw["success_count"]),
            last_failure_time=float(last_failure) if last_failure is not None else None,
            window=[(float(ts), bool(ok)) for ts, ok in raw["window"]],
        )


@dataclass(slots=True)
class OfflineQueueEntry:
    """An undelivered event held for later replay.

    Attributes:
        id: Unique entry identifier (uuid4 hex)
        payload: The outbound event payload as it would have been sent
        enqueued_at: Epoch seconds when the entry was queued
        attempts: Replay attempts that failed so far
    """

    id: str
    payload: dict[str, Any]
    enqueued_at: float
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OfflineQueueEntry:
        return cls(
            id=str(raw["id"]),
            payload=dict(raw["payload"]),
            enqueued_at=float(raw["enqueued_at"]),
            attempts=int(raw["attempts"]),
        )
