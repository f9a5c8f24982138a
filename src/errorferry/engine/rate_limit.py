"""Rate limiter and duplicate suppressor.

Two independent gates guard every send:

(a) a sliding-window cap on total sends per window (default 100/minute);
(b) duplicate suppression keyed by an error fingerprint: an event whose
    fingerprint was marked sent within the duplicate window is refused
    regardless of rate headroom.

The fingerprint is sha256 over ``"{stack signature}|{message[:100]}|{classification}"``.
The stack signature keeps the first N application frames (host-platform
frames skipped) with line numbers wildcarded, so the same bug reported
from slightly different lines collapses into one fingerprint.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from typing import Any

import structlog

from errorferry.contracts.enums import RateLimitDenial
from errorferry.contracts.events import Event
from errorferry.contracts.results import RateLimitDecision
from errorferry.contracts.state import RateLimiterState
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import RateLimitSettings
from errorferry.core.store.protocols import RATE_LIMITER_KEY, StateStore

logger = structlog.get_logger(__name__)

_MESSAGE_PREFIX_LENGTH = 100

# 'File "app.py", line 42, in f' and 'app.py:42' both normalize to a wildcard
_LINE_NUMBER_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bline \d+"), "line *"),
    (re.compile(r":\d+"), ":*"),
)


def normalize_frame(frame: str) -> str:
    for pattern, replacement in _LINE_NUMBER_PATTERNS:
        frame = pattern.sub(replacement, frame)
    return frame.strip()


def stack_signature(frames: Sequence[str], *, depth: int = 3, internal_markers: Sequence[str] = ()) -> str:
    """Join the first ``depth`` application frames with line numbers wildcarded."""
    meaningful = [
        frame for frame in frames if frame.strip() and not any(marker in frame for marker in internal_markers)
    ]
    return "|".join(normalize_frame(frame) for frame in meaningful[:depth])


def fingerprint(event: Event, *, depth: int = 3, internal_markers: Sequence[str] = ()) -> str:
    """Compute the deduplication fingerprint of an event."""
    signature = stack_signature(event.stack_frames, depth=depth, internal_markers=internal_markers)
    key = f"{signature}|{event.message[:_MESSAGE_PREFIX_LENGTH]}|{event.classification or 'Unknown'}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class RateLimiter:
    """Sliding-window rate limiter with fingerprint deduplication.

    ``can_send`` + ``mark_sent`` is the two-step contract; ``acquire`` does
    both inside one atomic store update so two concurrent reports of the
    same error cannot both slip through the duplicate gate.

    Example:
        limiter = RateLimiter(settings.rate_limit, store)
        decision = limiter.acquire(event)
        if not decision.allowed:
            return  # dropped, never queued
    """

    def __init__(self, settings: RateLimitSettings, store: StateStore, *, clock: Clock | None = None) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        # Retain state long enough to cover both windows twice over
        self._ttl = 2 * max(settings.window_seconds, settings.duplicate_window_seconds)

    def fingerprint(self, event: Event) -> str:
        return fingerprint(
            event,
            depth=self._settings.stack_signature_depth,
            internal_markers=self._settings.internal_frame_markers,
        )

    def _load(self, raw: dict[str, Any] | None, now: float) -> RateLimiterState:
        """Load state with both windows pruned relative to now."""
        state = RateLimiterState.from_dict(raw)
        rate_cutoff = now - self._settings.window_seconds
        state.request_timestamps = [ts for ts in state.request_timestamps if ts > rate_cutoff]
        dup_cutoff = now - self._settings.duplicate_window_seconds
        state.fingerprints = {fp: ts for fp, ts in state.fingerprints.items() if ts > dup_cutoff}
        return state

    def _reset_time(self, state: RateLimiterState, now: float) -> float:
        if not state.request_timestamps:
            return now + self._settings.window_seconds
        return min(state.request_timestamps) + self._settings.window_seconds

    def _evaluate(self, state: RateLimiterState, event_fp: str, now: float) -> RateLimitDecision:
        limit = self._settings.requests_per_minute
        count = len(state.request_timestamps)
        reset_time = self._reset_time(state, now)
        if count >= limit:
            return RateLimitDecision(
                allowed=False, remaining=0, reset_time=reset_time, reason=RateLimitDenial.RATE_LIMITED
            )
        # Pruning already dropped fingerprints outside the duplicate window
        if event_fp in state.fingerprints:
            return RateLimitDecision(
                allowed=False,
                remaining=limit - count,
                reset_time=reset_time,
                reason=RateLimitDenial.DUPLICATE,
            )
        return RateLimitDecision(allowed=True, remaining=limit - count - 1, reset_time=reset_time)

    @staticmethod
    def _mark(state: RateLimiterState, event_fp: str, now: float) -> None:
        state.request_timestamps.append(now)
        state.fingerprints[event_fp] = now

    def can_send(self, event: Event) -> RateLimitDecision:
        """Evaluate both gates without recording a send."""
        now = self._clock.time()
        event_fp = self.fingerprint(event)
        decision: RateLimitDecision | None = None

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal decision
            state = self._load(raw, now)
            decision = self._evaluate(state, event_fp, now)
            return state.to_dict()

        self._store.update(RATE_LIMITER_KEY, mutate, ttl_seconds=self._ttl)
        assert decision is not None
        return decision

    def mark_sent(self, event: Event) -> None:
        """Record a send: occupies a rate slot and starts the duplicate window."""
        now = self._clock.time()
        event_fp = self.fingerprint(event)

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw, now)
            self._mark(state, event_fp, now)
            return state.to_dict()

        self._store.update(RATE_LIMITER_KEY, mutate, ttl_seconds=self._ttl)

    def acquire(self, event: Event) -> RateLimitDecision:
        """Check both gates and, if allowed, mark the event sent in one atomic step."""
        now = self._clock.time()
        event_fp = self.fingerprint(event)
        decision: RateLimitDecision | None = None

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal decision
            state = self._load(raw, now)
            decision = self._evaluate(state, event_fp, now)
            if decision.allowed:
                self._mark(state, event_fp, now)
            return state.to_dict()

        self._store.update(RATE_LIMITER_KEY, mutate, ttl_seconds=self._ttl)
        assert decision is not None
        if not decision.allowed:
            logger.debug("Rate limiter refused event", reason=decision.reason, fingerprint=event_fp[:12])
        return decision

    def cleanup(self) -> dict[str, int]:
        """Prune both windows. Returns what is still tracked."""
        now = self._clock.time()
        state = RateLimiterState.from_dict(
            self._store.update(RATE_LIMITER_KEY, lambda raw: self._load(raw, now).to_dict(), ttl_seconds=self._ttl)
        )
        return {"requests": len(state.request_timestamps), "fingerprints": len(state.fingerprints)}

    def stats(self) -> dict[str, Any]:
        now = self._clock.time()
        state = self._load(self._store.get(RATE_LIMITER_KEY), now)
        count = len(state.request_timestamps)
        return {
            "request_count": count,
            "fingerprint_count": len(state.fingerprints),
            "remaining": max(0, self._settings.requests_per_minute - count),
            "reset_time": self._reset_time(state, now),
            "window_seconds": self._settings.window_seconds,
            "duplicate_window_seconds": self._settings.duplicate_window_seconds,
        }

    def reset(self) -> None:
        self._store.delete(RATE_LIMITER_KEY)
