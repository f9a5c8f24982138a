"""Tests for QuotaTracker ceilings and calendar rollover.

The shared clock starts at 2023-11-14 22:13:20 UTC, so two hours later is
a new UTC day and 2023-12-01 is a new month.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from errorferry.contracts.enums import QuotaDenial
from errorferry.core.clock import MockClock
from errorferry.core.config import QuotaSettings
from errorferry.core.store import MemoryStateStore
from errorferry.engine.quota import QuotaTracker

NEXT_DAY = 2 * 3600.0
FIRST_OF_DECEMBER = datetime(2023, 12, 1, 0, 30, tzinfo=UTC).timestamp()


def make_tracker(store: MemoryStateStore, clock: MockClock, **overrides: object) -> QuotaTracker:
    raw: dict[str, object] = {"daily_limit": 1000, "monthly_limit": 10000, "burst_limit": 1000}
    raw.update(overrides)
    return QuotaTracker(QuotaSettings(**raw), store, clock=clock)


def use(tracker: QuotaTracker, times: int, size: int = 100) -> None:
    for _ in range(times):
        tracker.record_usage(size)


# =============================================================================
# Ceilings
# =============================================================================


class TestCeilings:
    def test_fresh_tracker_allows(self, store: MemoryStateStore, clock: MockClock) -> None:
        decision = make_tracker(store, clock).can_send(100)

        assert decision.allowed is True
        assert decision.reason is None

    def test_payload_size(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, payload_size_limit=1000)

        assert tracker.can_send(1000).allowed is True
        decision = tracker.can_send(1001)
        assert decision.reason is QuotaDenial.PAYLOAD_SIZE
        assert "1001 bytes" in (decision.detail or "")

    def test_burst_limit_and_window(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, burst_limit=3, burst_window_seconds=60.0)
        use(tracker, 3)

        assert tracker.can_send().reason is QuotaDenial.BURST_LIMIT

        clock.advance(60.0)
        assert tracker.can_send().allowed is True

    def test_daily_limit(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=3)
        use(tracker, 3)

        assert tracker.can_send().reason is QuotaDenial.DAILY_LIMIT

    def test_monthly_limit(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, monthly_limit=3)
        use(tracker, 3)

        assert tracker.can_send().reason is QuotaDenial.MONTHLY_LIMIT

    def test_first_violation_wins(self, store: MemoryStateStore, clock: MockClock) -> None:
        """Checks run payload size, burst, daily, monthly and stop at the first failure."""
        tracker = make_tracker(store, clock, payload_size_limit=500, burst_limit=2, daily_limit=2, monthly_limit=2)
        use(tracker, 2)

        assert tracker.can_send(501).reason is QuotaDenial.PAYLOAD_SIZE
        assert tracker.can_send(10).reason is QuotaDenial.BURST_LIMIT

        clock.advance(61.0)
        assert tracker.can_send(10).reason is QuotaDenial.DAILY_LIMIT

        clock.advance(NEXT_DAY)
        assert tracker.can_send(10).reason is QuotaDenial.MONTHLY_LIMIT

    def test_can_send_does_not_count(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=1)
        for _ in range(5):
            assert tracker.can_send().allowed is True

        assert tracker.state().daily_count == 0

    def test_record_usage_accumulates(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock)
        use(tracker, 2, size=250)

        state = tracker.state()
        assert state.daily_count == 2
        assert state.monthly_count == 2
        assert state.total_bytes == 500
        assert state.burst_timestamps == [clock.time(), clock.time()]

    @settings(max_examples=30)
    @given(limit=st.integers(min_value=1, max_value=15), attempts=st.integers(min_value=0, max_value=40))
    def test_gated_usage_never_exceeds_daily_limit(self, limit: int, attempts: int) -> None:
        clock = MockClock()
        tracker = make_tracker(MemoryStateStore(clock=clock), clock, daily_limit=limit)
        for _ in range(attempts):
            if tracker.can_send(10).allowed:
                tracker.record_usage(10)

        assert tracker.state().daily_count == min(limit, attempts)


class TestReservation:
    def test_try_acquire_counts_when_allowed(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock)

        assert tracker.try_acquire(250).allowed is True

        state = tracker.state()
        assert state.daily_count == 1
        assert state.monthly_count == 1
        assert state.total_bytes == 250
        assert state.burst_timestamps == [clock.time()]

    def test_try_acquire_stops_at_daily_limit(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=3)

        decisions = [tracker.try_acquire(10) for _ in range(10)]

        assert [d.allowed for d in decisions] == [True] * 3 + [False] * 7
        assert decisions[-1].reason is QuotaDenial.DAILY_LIMIT
        assert tracker.state().daily_count == 3

    def test_try_acquire_stops_at_burst_limit(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, burst_limit=2)

        decisions = [tracker.try_acquire(10) for _ in range(8)]

        assert sum(d.allowed for d in decisions) == 2
        assert decisions[2].reason is QuotaDenial.BURST_LIMIT

    def test_denied_acquire_does_not_count(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, payload_size_limit=100)

        assert tracker.try_acquire(101).reason is QuotaDenial.PAYLOAD_SIZE
        assert tracker.state().daily_count == 0

    def test_release_returns_the_share(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=1)
        tracker.try_acquire(40)
        assert tracker.can_send(40).reason is QuotaDenial.DAILY_LIMIT

        tracker.release(40)

        state = tracker.state()
        assert state.daily_count == 0
        assert state.monthly_count == 0
        assert state.total_bytes == 0
        assert state.burst_timestamps == []
        assert tracker.can_send(40).allowed is True

    def test_release_after_rollover_does_not_go_negative(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock)
        tracker.try_acquire(40)
        clock.advance(NEXT_DAY)

        tracker.release(40)
        tracker.release(40)

        state = tracker.state()
        assert state.daily_count == 0
        assert state.monthly_count == 0
        assert state.total_bytes == 0


# =============================================================================
# Rollover
# =============================================================================


class TestRollover:
    def test_daily_counter_resets_on_new_utc_day(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=3)
        use(tracker, 3)

        clock.advance(NEXT_DAY)

        assert tracker.can_send().allowed is True
        state = tracker.state()
        assert state.daily_count == 0
        assert state.monthly_count == 3
        assert state.last_reset_date == "2023-11-15"

    def test_rollover_happens_once_per_day(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock)
        use(tracker, 2)
        clock.advance(NEXT_DAY)
        use(tracker, 1)

        clock.advance(3600.0)

        assert tracker.state().daily_count == 1

    def test_monthly_counter_resets_on_new_month(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, monthly_limit=3)
        use(tracker, 3)

        clock.advance(NEXT_DAY)
        assert tracker.can_send().reason is QuotaDenial.MONTHLY_LIMIT

        clock.set(FIRST_OF_DECEMBER)
        assert tracker.can_send().allowed is True
        state = tracker.state()
        assert state.monthly_count == 0
        assert state.total_bytes == 0
        assert state.last_reset_month == "2023-12"

    def test_clock_moving_backwards_never_resets(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock)
        use(tracker, 2)

        clock.set(clock.time() - 86_400.0)

        state = tracker.state()
        assert state.daily_count == 2
        assert state.last_reset_date == "2023-11-14"

    def test_state_is_shared_through_the_store(self, store: MemoryStateStore, clock: MockClock) -> None:
        use(make_tracker(store, clock), 4)

        assert make_tracker(store, clock).state().daily_count == 4


class TestStatsAndReset:
    def test_stats(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=5, burst_limit=10)
        use(tracker, 2, size=40)

        stats = tracker.stats()

        assert stats["daily_usage"] == 2
        assert stats["daily_remaining"] == 3
        assert stats["burst_remaining"] == 8
        assert stats["total_bytes"] == 80
        assert stats["is_over_quota"] is False
        assert stats["next_reset_time"] == pytest.approx(datetime(2023, 11, 15, tzinfo=UTC).timestamp())

    def test_over_quota_flag(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=1)
        use(tracker, 1)

        assert tracker.stats()["is_over_quota"] is True

    def test_reset(self, store: MemoryStateStore, clock: MockClock) -> None:
        tracker = make_tracker(store, clock, daily_limit=1)
        use(tracker, 1)

        tracker.reset()

        assert tracker.can_send().allowed is True
        assert tracker.state().monthly_count == 0
