"""RetryExecutor: retry logic with tenacity integration.

Provides configurable retry behavior around a single delivery:
- Exponential backoff, capped, with +/-10% jitter
- max_retries counts retries AFTER the first attempt
- Non-retryable failures abort immediately
- Every call ends in a RetryOutcome; the final failure is returned, not raised

Delay before retry n (n = 0 for the first retry) is
``min(initial_delay * multiplier ** n, max_delay)``, then perturbed by up to
10% in either direction when jitter is on.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import structlog
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt

from errorferry.contracts.errors import CircuitOpenError, PayloadValidationError, TransportError
from errorferry.contracts.results import RetryOutcome
from errorferry.core.clock import DEFAULT_CLOCK, Clock

if TYPE_CHECKING:
    from errorferry.core.config import RetrySettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.1


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Configuration for retry behavior.

    max_retries is the number of retries, not the number of tries.
    So max_retries=3 means: try, retry, retry, retry (4 total).
    """

    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def base_delay(self, retry_index: int) -> float:
        """Un-jittered delay before retry ``retry_index`` (0-based)."""
        return min(self.initial_delay * self.backoff_multiplier**retry_index, self.max_delay)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_retries=0)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        """Factory from RetrySettings config model."""
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            jitter=settings.jitter,
        )


def is_retryable(error: BaseException) -> bool:
    """Whether another attempt could plausibly succeed after error.

    Terminal: transport errors flagged non-retryable (4xx other than
    408/429), payload validation failures, programming/value errors, an
    open circuit, and anything that is not an Exception at all.
    """
    if isinstance(error, TransportError):
        return error.retryable
    if isinstance(error, (PayloadValidationError, CircuitOpenError, TypeError, ValueError)):
        return False
    return isinstance(error, Exception)


class RetryExecutor:
    """Runs an operation under a RetryPolicy.

    Uses tenacity for the attempt loop. Sleeping and randomness are
    injectable so tests can assert on exact delays without waiting.

    Example:
        executor = RetryExecutor(RetryPolicy.from_settings(settings.retry))

        outcome = executor.execute_with_retry(lambda: transport.send(payload))
        if not outcome.success:
            queue.enqueue(payload)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policy = policy if policy is not None else RetryPolicy()
        self._sleep = sleep
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._rng = rng if rng is not None else random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def compute_delay(self, retry_index: int, policy: RetryPolicy | None = None) -> float:
        """Delay before retry ``retry_index`` (0-based), jitter applied."""
        policy = policy or self._policy
        delay = policy.base_delay(retry_index)
        if policy.jitter:
            delay += self._rng.uniform(-JITTER_FRACTION, JITTER_FRACTION) * delay
        return max(0.0, delay)

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy | None = None,
        *,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> RetryOutcome:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            policy: Overrides the executor's policy for this call
            on_retry: Optional callback before each retry (attempt, error)

        Returns:
            RetryOutcome describing the final attempt
        """
        policy = policy or self._policy
        started = self._clock.monotonic()
        attempt = 0
        last_error: BaseException | None = None

        def wait(retry_state: RetryCallState) -> float:
            # attempt_number counts the attempt that just failed (1-based)
            return self.compute_delay(retry_state.attempt_number - 1, policy)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome is not None else None
            logger.debug(
                "Retrying after failure",
                attempt=retry_state.attempt_number,
                delay=retry_state.upcoming_sleep,
                error=str(error),
            )
            if on_retry is not None and error is not None:
                on_retry(retry_state.attempt_number, error)

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=wait,
                retry=retry_if_exception(is_retryable),
                sleep=self._sleep,
                before_sleep=before_sleep,
                reraise=False,  # We catch RetryError and convert to a RetryOutcome
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        result = operation()
                    except Exception as e:
                        last_error = e
                        raise
                return RetryOutcome(
                    success=True,
                    attempts=attempt,
                    total_time=self._clock.monotonic() - started,
                    result=result,
                )
        except RetryError as e:
            # Retries exhausted; last_error is set because at least one attempt failed
            final_error = last_error or e.last_attempt.exception()
            return RetryOutcome(
                success=False,
                attempts=attempt,
                total_time=self._clock.monotonic() - started,
                error=final_error,
            )
        except Exception as e:
            # Non-retryable: tenacity re-raises the original error immediately
            logger.debug("Aborting retries on non-retryable error", attempt=attempt, error=str(e))
            return RetryOutcome(
                success=False,
                attempts=attempt,
                total_time=self._clock.monotonic() - started,
                error=e,
            )

        # Should not reach here - Retrying always returns or raises
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    def retry(self, operation: Callable[[], T], policy: RetryPolicy | None = None) -> T:
        """Run operation with retries and return its result.

        Raises:
            Exception: The final error when every attempt failed.
        """
        outcome = self.execute_with_retry(operation, policy)
        if outcome.success:
            return outcome.result  # type: ignore[no-any-return]
        assert outcome.error is not None
        raise outcome.error
