"""Delivery exception taxonomy.

Exceptions in this module travel between the send capability, the retry
executor and the circuit breaker. None of them is allowed to escape the
orchestrator's public ``report()`` call; the orchestrator translates them
into a DeliveryStatus.
"""

from __future__ import annotations

# 408 and 429 are client-class codes that still signal a transient condition.
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class DeliveryError(Exception):
    """Base class for all errors raised while delivering an event."""


class TransportError(DeliveryError):
    """Raised by a send capability when the endpoint call did not succeed.

    Attributes:
        status: HTTP status code, or None for network-level failures
            (connection refused, DNS failure, timeout).
        message: Human-readable error description
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}" if status is not None else message)

    @property
    def retryable(self) -> bool:
        """Whether another attempt could plausibly succeed.

        Network failures, 408/429 and any 5xx are retryable. Every other
        status (the rest of the 4xx class) is a terminal client error.
        """
        if self.status is None:
            return True
        if self.status in RETRYABLE_CLIENT_STATUSES:
            return True
        return self.status >= 500


class CircuitOpenError(DeliveryError):
    """Raised by the circuit breaker instead of invoking the operation.

    Attributes:
        retry_at: Epoch seconds after which a half-open probe is allowed
    """

    def __init__(self, retry_at: float | None = None) -> None:
        self.retry_at = retry_at
        super().__init__("Circuit breaker is OPEN - operation not executed")


class PayloadValidationError(DeliveryError):
    """Raised when a payload is structurally invalid and must not be retried.

    Attributes:
        errors: Individual validation failures
    """

    def __init__(self, errors: list[str] | tuple[str, ...]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(self.errors) or "payload validation failed")


class StoreError(Exception):
    """Raised when the persistent state store cannot complete an operation."""


class EndpointPolicyError(DeliveryError):
    """Raised when the configured endpoint violates the endpoint policy.

    The reporter refuses to start rather than send events to a destination
    the policy does not allow.

    Attributes:
        errors: Individual policy violations
    """

    def __init__(self, errors: list[str] | tuple[str, ...]) -> None:
        self.errors = tuple(errors)
        super().__init__("Endpoint rejected: " + ("; ".join(self.errors) or "policy violation"))
