"""Quota tracker: volume and size ceilings for outbound events.

Four independent ceilings are evaluated in a fixed order and the first
violation wins:

1. payload size (per event)
2. burst (sends within a short rolling window)
3. daily count (UTC calendar day)
4. monthly count (UTC calendar month)

Every read and write first rolls the calendar counters over and prunes the
burst window inside the store's atomic update, so a stale day or month can
never influence a decision.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from errorferry.contracts.enums import QuotaDenial
from errorferry.contracts.results import QuotaDecision
from errorferry.contracts.state import QuotaState
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import QuotaSettings
from errorferry.core.store.protocols import QUOTA_KEY, StateStore

logger = structlog.get_logger(__name__)


def date_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


class QuotaTracker:
    """Enforces daily/monthly/burst/payload ceilings backed by a StateStore.

    ``can_send`` never raises for a policy denial; it returns a
    QuotaDecision with the first violated ceiling as ``reason``.

    Example:
        tracker = QuotaTracker(settings.quota, store)
        decision = tracker.can_send(len(body))
        if decision.allowed:
            send(body)
            tracker.record_usage(len(body))
    """

    def __init__(self, settings: QuotaSettings, store: StateStore, *, clock: Clock | None = None) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def _load(self, raw: dict[str, Any] | None) -> QuotaState:
        """Load state and apply rollover and burst pruning for the current time."""
        now = self._clock.now()
        today, this_month = date_key(now), month_key(now)
        state = QuotaState.from_dict(raw, date_key=today, month_key=this_month)

        # Keys are zero-padded ISO strings, so string order is calendar order.
        # Only a forward move resets: a clock stepping backwards must not
        # wipe counters for a period that already happened.
        if today > state.last_reset_date:
            state.daily_count = 0
            state.last_reset_date = today
        if this_month > state.last_reset_month:
            state.monthly_count = 0
            state.total_bytes = 0
            state.last_reset_month = this_month

        cutoff = self._clock.time() - self._settings.burst_window_seconds
        state.burst_timestamps = [ts for ts in state.burst_timestamps if ts > cutoff]
        return state

    def _evaluate(self, state: QuotaState, payload_size: int) -> QuotaDecision:
        s = self._settings
        if payload_size > s.payload_size_limit:
            return QuotaDecision(
                allowed=False,
                reason=QuotaDenial.PAYLOAD_SIZE,
                detail=f"Payload size ({payload_size} bytes) exceeds limit ({s.payload_size_limit} bytes)",
            )
        if len(state.burst_timestamps) >= s.burst_limit:
            return QuotaDecision(allowed=False, reason=QuotaDenial.BURST_LIMIT, detail="Burst limit exceeded")
        if state.daily_count >= s.daily_limit:
            return QuotaDecision(allowed=False, reason=QuotaDenial.DAILY_LIMIT, detail="Daily quota exceeded")
        if state.monthly_count >= s.monthly_limit:
            return QuotaDecision(allowed=False, reason=QuotaDenial.MONTHLY_LIMIT, detail="Monthly quota exceeded")
        return QuotaDecision(allowed=True)

    def can_send(self, payload_size: int = 0) -> QuotaDecision:
        """Decide whether an event of payload_size bytes fits every ceiling."""
        decision: QuotaDecision | None = None

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal decision
            state = self._load(raw)
            decision = self._evaluate(state, payload_size)
            return state.to_dict()

        self._store.update(QUOTA_KEY, mutate)
        assert decision is not None
        if not decision.allowed:
            logger.debug("Quota denied event", reason=decision.reason, payload_size=payload_size)
        return decision

    def record_usage(self, payload_size: int = 0) -> None:
        """Count one delivered event against every ceiling."""

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw)
            self._charge(state, payload_size)
            return state.to_dict()

        self._store.update(QUOTA_KEY, mutate)

    def try_acquire(self, payload_size: int = 0) -> QuotaDecision:
        """Check every ceiling and, if allowed, count the event in the same update.

        Used for events whose delivery is deferred (batching): the event
        holds its place in the ceilings from admission on. Undo with
        ``release`` if it is never delivered.
        """
        decision: QuotaDecision | None = None

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal decision
            state = self._load(raw)
            decision = self._evaluate(state, payload_size)
            if decision.allowed:
                self._charge(state, payload_size)
            return state.to_dict()

        self._store.update(QUOTA_KEY, mutate)
        assert decision is not None
        if not decision.allowed:
            logger.debug("Quota denied event", reason=decision.reason, payload_size=payload_size)
        return decision

    def release(self, payload_size: int = 0) -> None:
        """Return one reservation taken by ``try_acquire``.

        Counters never go below zero, so a release that lands after a
        rollover cannot borrow from the new period.
        """

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw)
            state.daily_count = max(0, state.daily_count - 1)
            state.monthly_count = max(0, state.monthly_count - 1)
            state.total_bytes = max(0, state.total_bytes - payload_size)
            if state.burst_timestamps:
                state.burst_timestamps.remove(max(state.burst_timestamps))
            return state.to_dict()

        self._store.update(QUOTA_KEY, mutate)

    def _charge(self, state: QuotaState, payload_size: int) -> None:
        state.daily_count += 1
        state.monthly_count += 1
        state.total_bytes += payload_size
        state.burst_timestamps.append(self._clock.time())

    def state(self) -> QuotaState:
        """Return the current state with rollover applied, without persisting it."""
        return self._load(self._store.get(QUOTA_KEY))

    def stats(self) -> dict[str, Any]:
        s = self._settings
        state = self.state()
        burst = len(state.burst_timestamps)
        now = self._clock.now()
        next_midnight = datetime(now.year, now.month, now.day, tzinfo=UTC) + timedelta(days=1)
        return {
            "daily_usage": state.daily_count,
            "monthly_usage": state.monthly_count,
            "daily_remaining": max(0, s.daily_limit - state.daily_count),
            "monthly_remaining": max(0, s.monthly_limit - state.monthly_count),
            "burst_usage": burst,
            "burst_remaining": max(0, s.burst_limit - burst),
            "total_bytes": state.total_bytes,
            "is_over_quota": (
                state.daily_count >= s.daily_limit or state.monthly_count >= s.monthly_limit or burst >= s.burst_limit
            ),
            "next_reset_time": next_midnight.timestamp(),
        }

    def reset(self) -> None:
        """Zero every counter for the current day and month."""
        now = self._clock.now()
        self._store.set(QUOTA_KEY, QuotaState(last_reset_date=date_key(now), last_reset_month=month_key(now)).to_dict())
        logger.info("Quota counters reset")
