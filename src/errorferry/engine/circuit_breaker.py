"""Circuit breaker guarding the send capability.

State machine:

    CLOSED --(failure ratio >= threshold over >= minimum_requests)--> OPEN
    OPEN --(reset_timeout elapsed, evaluated on the next call)--> HALF_OPEN
    HALF_OPEN --(first success)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

Every execution appends a (timestamp, succeeded) outcome to a rolling
window that is pruned to the monitoring period on every write. State and
window live in the StateStore so a restart does not forget an outage.

Thread Safety:
    State transitions go through the store's atomic update. The half-open
    probe budget is counted in-process: concurrent probes from other
    processes sharing the store are not limited by it.
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Callable
from typing import Any, ParamSpec, TypeVar

import structlog

from errorferry.contracts.enums import CircuitState
from errorferry.contracts.errors import CircuitOpenError
from errorferry.contracts.state import CircuitBreakerState
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import CircuitBreakerSettings
from errorferry.core.store.protocols import CIRCUIT_BREAKER_KEY, StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


class CircuitBreaker:
    """Failure-rate circuit breaker backed by a StateStore.

    Example:
        breaker = CircuitBreaker(settings.circuit_breaker, store)
        try:
            breaker.execute(lambda: transport.send(payload))
        except CircuitOpenError:
            queue.enqueue(payload)
    """

    def __init__(self, settings: CircuitBreakerSettings, store: StateStore, *, clock: Clock | None = None) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._probe_lock = threading.Lock()
        self._probes_in_flight = 0

    # === State helpers ===

    def _load(self, raw: dict[str, Any] | None, now: float) -> CircuitBreakerState:
        state = CircuitBreakerState.from_dict(raw, now=now)
        cutoff = now - self._settings.monitoring_period_seconds
        state.window = [(ts, ok) for ts, ok in state.window if ts > cutoff]
        return state

    def _reset_due(self, state: CircuitBreakerState, now: float) -> bool:
        return now - state.state_changed_at >= self._settings.reset_timeout_seconds

    def _should_open(self, state: CircuitBreakerState) -> bool:
        total = len(state.window)
        if total < self._settings.minimum_requests:
            return False
        failures = sum(1 for _, ok in state.window if not ok)
        return failures / total >= self._settings.failure_threshold

    def _transition(self, state: CircuitBreakerState, to: CircuitState, now: float) -> None:
        logger.info(
            "Circuit breaker state change",
            from_state=state.state,
            to_state=to,
            failure_count=state.failure_count,
            window_size=len(state.window),
        )
        state.state = to
        state.state_changed_at = now
        if to == CircuitState.CLOSED:
            state.failure_count = 0

    def _refresh(self) -> CircuitBreakerState:
        """Apply the lazy OPEN -> HALF_OPEN transition and persist the result."""
        now = self._clock.time()

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw, now)
            if state.state == CircuitState.OPEN and self._reset_due(state, now):
                self._transition(state, CircuitState.HALF_OPEN, now)
            return state.to_dict()

        return CircuitBreakerState.from_dict(self._store.update(CIRCUIT_BREAKER_KEY, mutate), now=now)

    def _record(self, succeeded: bool) -> None:
        now = self._clock.time()

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw, now)
            state.window.append((now, succeeded))
            if succeeded:
                state.success_count += 1
                if state.state == CircuitState.HALF_OPEN:
                    self._transition(state, CircuitState.CLOSED, now)
                    # Start the closed period with a clean window so the
                    # failures that caused the outage cannot reopen it at once
                    state.window = [(now, True)]
            else:
                state.failure_count += 1
                state.last_failure_time = now
                if state.state == CircuitState.HALF_OPEN:
                    self._transition(state, CircuitState.OPEN, now)
                elif state.state == CircuitState.CLOSED and self._should_open(state):
                    self._transition(state, CircuitState.OPEN, now)
            return state.to_dict()

        self._store.update(CIRCUIT_BREAKER_KEY, mutate)

    # === Public API ===

    @property
    def state(self) -> CircuitState:
        return self._refresh().state

    def can_execute(self) -> bool:
        """Whether a call would be attempted right now."""
        state = self._refresh()
        if state.state == CircuitState.CLOSED:
            return True
        if state.state == CircuitState.HALF_OPEN:
            with self._probe_lock:
                return self._probes_in_flight < self._settings.half_open_max_probes
        return False

    def execute(self, operation: Callable[[], T]) -> T:
        """Run operation unless the circuit is open.

        Raises:
            CircuitOpenError: Circuit is OPEN (or HALF_OPEN with its probe
                budget in use); operation was not invoked.
            Exception: Whatever operation raised, after recording the failure.
        """
        if not self._settings.enabled:
            return operation()

        state = self._refresh()
        probing = False
        if state.state == CircuitState.OPEN:
            raise CircuitOpenError(retry_at=state.state_changed_at + self._settings.reset_timeout_seconds)
        if state.state == CircuitState.HALF_OPEN:
            with self._probe_lock:
                if self._probes_in_flight >= self._settings.half_open_max_probes:
                    raise CircuitOpenError()
                self._probes_in_flight += 1
            probing = True

        try:
            try:
                result = operation()
            except Exception:
                self._record(False)
                raise
            self._record(True)
            return result
        finally:
            if probing:
                with self._probe_lock:
                    self._probes_in_flight -= 1

    def protect(self, fn: Callable[P, T]) -> Callable[P, T]:
        """Wrap fn so every call goes through execute()."""

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.execute(lambda: fn(*args, **kwargs))

        return wrapper

    def stats(self) -> dict[str, Any]:
        now = self._clock.time()
        state = self._refresh()
        total = len(state.window)
        failures = sum(1 for _, ok in state.window if not ok)
        stats: dict[str, Any] = {
            "state": state.state.value,
            "failure_count": state.failure_count,
            "success_count": state.success_count,
            "total_requests": total,
            "failure_rate": failures / total if total else 0.0,
            "time_in_current_state": now - state.state_changed_at,
            "last_failure_time": state.last_failure_time,
            "can_execute": self.can_execute(),
        }
        if state.state == CircuitState.OPEN:
            next_retry = state.state_changed_at + self._settings.reset_timeout_seconds
            stats["next_retry_time"] = next_retry
            stats["time_until_reset"] = max(0.0, next_retry - now)
        return stats

    def reset(self) -> None:
        """Return to a fresh CLOSED state with an empty window."""
        self._store.set(CIRCUIT_BREAKER_KEY, CircuitBreakerState(state_changed_at=self._clock.time()).to_dict())
        logger.info("Circuit breaker reset")

    def _force(self, to: CircuitState) -> None:
        now = self._clock.time()

        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            state = self._load(raw, now)
            self._transition(state, to, now)
            return state.to_dict()

        self._store.update(CIRCUIT_BREAKER_KEY, mutate)

    def force_open(self) -> None:
        self._force(CircuitState.OPEN)

    def force_close(self) -> None:
        self._force(CircuitState.CLOSED)

    def cleanup(self) -> int:
        """Prune the outcome window. Returns how many outcomes remain."""
        now = self._clock.time()
        remaining = self._store.update(CIRCUIT_BREAKER_KEY, lambda raw: self._load(raw, now).to_dict())
        return len(remaining["window"])
