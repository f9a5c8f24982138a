"""Tests for the sliding-window rate limiter and duplicate suppression."""

from __future__ import annotations

import pytest

from errorferry.contracts.enums import RateLimitDenial
from errorferry.core.clock import MockClock
from errorferry.core.config import RateLimitSettings
from errorferry.core.store import MemoryStateStore
from errorferry.engine.rate_limit import RateLimiter, fingerprint, normalize_frame, stack_signature
from tests.fixtures.factories import make_event


def make_limiter(store: MemoryStateStore, clock: MockClock, **overrides: object) -> RateLimiter:
    return RateLimiter(RateLimitSettings(**overrides), store, clock=clock)


# =============================================================================
# Fingerprinting
# =============================================================================


class TestFingerprint:
    @pytest.mark.parametrize(
        ("frame", "expected"),
        [
            ('File "/srv/app/a.py", line 42, in f', 'File "/srv/app/a.py", line *, in f'),
            ("at handler (app.js:42:7)", "at handler (app.js:*:*)"),
            ("  no numbers here  ", "no numbers here"),
        ],
    )
    def test_normalize_frame(self, frame: str, expected: str) -> None:
        assert normalize_frame(frame) == expected

    def test_same_bug_on_shifted_lines_collapses(self) -> None:
        original = make_event(frames=('File "/srv/app/a.py", line 42, in f', 'File "/srv/app/b.py", line 7, in g'))
        shifted = make_event(frames=('File "/srv/app/a.py", line 45, in f', 'File "/srv/app/b.py", line 9, in g'))

        assert fingerprint(original) == fingerprint(shifted)

    def test_message_classification_and_frames_matter(self) -> None:
        base = fingerprint(make_event())

        assert fingerprint(make_event("Another failure")) != base
        assert fingerprint(make_event(classification="ValueError")) != base
        assert fingerprint(make_event(frames=('File "/srv/app/other.py", line 1, in h',))) != base

    def test_only_message_prefix_counts(self) -> None:
        prefix = "x" * 100

        assert fingerprint(make_event(prefix + "tail one")) == fingerprint(make_event(prefix + "tail two"))

    def test_signature_depth_and_internal_frames(self) -> None:
        frames = (
            'File "/usr/lib/python3.12/site-packages/lib.py", line 3, in call',
            'File "/srv/app/a.py", line 1, in a',
            'File "/srv/app/b.py", line 2, in b',
            'File "/srv/app/c.py", line 3, in c',
        )

        signature = stack_signature(frames, depth=2, internal_markers=("site-packages/",))

        assert signature == 'File "/srv/app/a.py", line *, in a|File "/srv/app/b.py", line *, in b'

    def test_frames_beyond_depth_are_ignored(self) -> None:
        head = ('File "/srv/app/a.py", line 1, in a',)
        one = make_event(frames=(*head, 'File "/srv/app/x.py", line 1, in x'))
        two = make_event(frames=(*head, 'File "/srv/app/y.py", line 1, in y'))

        assert fingerprint(one, depth=1) == fingerprint(two, depth=1)


# =============================================================================
# Gates
# =============================================================================


class TestDuplicateSuppression:
    def test_duplicate_within_window_refused(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock)
        event = make_event()

        assert limiter.acquire(event).allowed is True
        decision = limiter.acquire(event)

        assert decision.allowed is False
        assert decision.reason is RateLimitDenial.DUPLICATE

    def test_duplicate_window_expires(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, duplicate_window_seconds=300.0)
        event = make_event()
        limiter.acquire(event)

        clock.advance(299.0)
        assert limiter.can_send(event).reason is RateLimitDenial.DUPLICATE

        clock.advance(1.0)
        assert limiter.can_send(event).allowed is True

    def test_distinct_errors_pass(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock)

        assert limiter.acquire(make_event("first")).allowed is True
        assert limiter.acquire(make_event("second")).allowed is True

    def test_can_send_does_not_record(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock)
        event = make_event()

        assert limiter.can_send(event).allowed is True
        assert limiter.can_send(event).allowed is True

    def test_mark_sent_starts_duplicate_window(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock)
        event = make_event()

        limiter.mark_sent(event)

        assert limiter.can_send(event).reason is RateLimitDenial.DUPLICATE

    def test_duplicates_seen_across_instances(self, store: MemoryStateStore, clock: MockClock) -> None:
        event = make_event()
        make_limiter(store, clock).acquire(event)

        assert make_limiter(store, clock).acquire(event).reason is RateLimitDenial.DUPLICATE


class TestRateWindow:
    def test_limit_reached(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, requests_per_minute=3)
        remaining = [limiter.acquire(make_event(f"error {i}")).remaining for i in range(3)]

        decision = limiter.acquire(make_event("error 3"))

        assert remaining == [2, 1, 0]
        assert decision.reason is RateLimitDenial.RATE_LIMITED
        assert decision.remaining == 0
        assert decision.reset_time == clock.time() + 60.0

    def test_window_slides(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, requests_per_minute=2)
        limiter.acquire(make_event("a"))
        clock.advance(30.0)
        limiter.acquire(make_event("b"))

        clock.advance(30.0)

        assert limiter.acquire(make_event("c")).allowed is True
        assert limiter.acquire(make_event("d")).reason is RateLimitDenial.RATE_LIMITED

    def test_rate_limit_reported_before_duplicate(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, requests_per_minute=1)
        event = make_event()
        limiter.acquire(event)

        assert limiter.acquire(event).reason is RateLimitDenial.RATE_LIMITED


class TestMaintenance:
    def test_cleanup_prunes_both_windows(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, window_seconds=60.0, duplicate_window_seconds=300.0)
        limiter.acquire(make_event("old"))
        clock.advance(120.0)
        limiter.acquire(make_event("new"))

        assert limiter.cleanup() == {"requests": 1, "fingerprints": 2}

        clock.advance(400.0)
        assert limiter.cleanup() == {"requests": 0, "fingerprints": 0}

    def test_stats(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock, requests_per_minute=10)
        limiter.acquire(make_event())

        stats = limiter.stats()

        assert stats["request_count"] == 1
        assert stats["remaining"] == 9
        assert stats["fingerprint_count"] == 1

    def test_reset(self, store: MemoryStateStore, clock: MockClock) -> None:
        limiter = make_limiter(store, clock)
        event = make_event()
        limiter.acquire(event)

        limiter.reset()

        assert limiter.can_send(event).allowed is True
